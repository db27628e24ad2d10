from pathlib import Path

import pytest
from sqlalchemy import text

from db.record_store import SQLiteRecordStore
from db.sqlite_client import SQLiteClient
from search.errors import StoreUnavailableError
from search.keyword_index import InvertedIndexStore, escape_like
from search.models import KeywordSource, Record


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / "index.db"))
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_upsert_keyword_is_first_writer_wins(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        async with client.session() as session:
            index = InvertedIndexStore(session)
            assert await index.upsert_keyword("m1", "deploy", KeywordSource.CONTENT, 1.0)
            assert not await index.upsert_keyword("m1", "deploy", KeywordSource.TAGS, 2.0)

        async with client.session() as session:
            rows = (
                await session.execute(
                    text(
                        "SELECT source, weight FROM search_keywords "
                        "WHERE record_id = 'm1' AND keyword = 'deploy'"
                    )
                )
            ).all()
        assert len(rows) == 1
        assert rows[0].source == "content"
        assert rows[0].weight == pytest.approx(1.0)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_remove_for_record_and_lookups(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        async with client.session() as session:
            index = InvertedIndexStore(session)
            await index.upsert_keyword("m1", "deploy", KeywordSource.CONTENT, 1.0)
            await index.upsert_keyword("m2", "deployment", KeywordSource.CONTENT, 1.0)
            await index.upsert_keyword("m3", "rollback", KeywordSource.TAGS, 2.0)

            assert await index.lookup_exact("deploy") == ["m1"]
            assert await index.lookup_fuzzy("deploy") == ["m1", "m2"]
            assert await index.candidates(["deploy"], fuzzy=False) == ["m1"]
            assert await index.candidates(["deploy"], fuzzy=True) == ["m1", "m2"]

            assert await index.remove_for_record("m1") == 1
            assert await index.lookup_exact("deploy") == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fuzzy_lookup_treats_like_wildcards_literally(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        async with client.session() as session:
            index = InvertedIndexStore(session)
            await index.upsert_keyword("m1", "a_b", KeywordSource.CONTENT, 1.0)
            await index.upsert_keyword("m2", "axb", KeywordSource.CONTENT, 1.0)
            assert await index.lookup_fuzzy("a_b") == ["m1"]
        assert escape_like("50%_x") == "50\\%\\_x"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_co_occurring_ranks_by_shared_record_count(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    store = SQLiteRecordStore(client)
    try:
        corpus = {
            "r1": ["deploy", "service", "rollback"],
            "r2": ["deploy", "service", "rollback"],
            "r3": ["deploy", "rollback"],
            "r4": ["service", "staging"],
        }
        for record_id, keywords in corpus.items():
            await store.save_record(Record(id=record_id, content=" ".join(keywords)))
        async with client.session() as session:
            index = InvertedIndexStore(session)
            for record_id, keywords in corpus.items():
                for keyword in keywords:
                    await index.upsert_keyword(record_id, keyword, KeywordSource.CONTENT, 1.0)

        async with client.session() as session:
            related = await InvertedIndexStore(session).co_occurring(
                ["deploy", "service"], ["deploy", "service"]
            )
        assert related == [("rollback", 3), ("staging", 1)]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_co_occurring_ignores_archived_records(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    store = SQLiteRecordStore(client)
    try:
        await store.save_record(Record(id="live", content="deploy rollback"))
        await store.save_record(Record(id="gone", content="deploy canary", archived=True))
        async with client.session() as session:
            index = InvertedIndexStore(session)
            for record_id, keyword in [
                ("live", "deploy"),
                ("live", "rollback"),
                ("gone", "deploy"),
                ("gone", "canary"),
            ]:
                await index.upsert_keyword(record_id, keyword, KeywordSource.CONTENT, 1.0)
            related = await index.co_occurring(["deploy"], [])
        assert related == [("rollback", 1)]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_suggestions_and_statistics(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    store = SQLiteRecordStore(client)
    try:
        await store.save_record(Record(id="m1", content="deploy"))
        await store.save_record(Record(id="m2", content="deploy"))
        async with client.session() as session:
            index = InvertedIndexStore(session)
            await index.upsert_keyword("m1", "deploy", KeywordSource.CONTENT, 1.0)
            await index.upsert_keyword("m2", "deploy", KeywordSource.CONTENT, 1.0)
            await index.upsert_keyword("m1", "deployment", KeywordSource.CONTENT, 1.0)

            assert await index.suggestions("dep") == ["deploy", "deployment"]
            assert await index.suggestions("d") == []

            stats = await index.statistics()
        assert stats["keyword_count"] == 2
        assert stats["total_references"] == 3
        assert stats["average_references"] == pytest.approx(1.5)
        assert stats["popular_keywords"][0] == {"keyword": "deploy", "references": 2}
        assert stats["recent_keywords"][0]["keyword"] == "deploy"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_closed_client_raises_store_unavailable(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    await client.close()
    with pytest.raises(StoreUnavailableError):
        async with client.session() as session:
            await InvertedIndexStore(session).lookup_exact("deploy")
