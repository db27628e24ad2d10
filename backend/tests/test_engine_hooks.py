from pathlib import Path

import pytest

from db.sqlite_client import SQLiteClient
from search.engine import SearchIndexEngine
from search.errors import ValidationError
from search.models import Record
from search.options import SearchOptions
from search.settings import IndexSettings

KEYWORD_ONLY = SearchOptions(use_full_text=False)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _engine(tmp_path: Path, settings: IndexSettings) -> SearchIndexEngine:
    client = SQLiteClient(_sqlite_url(tmp_path / "index.db"))
    await client.init_db()
    return SearchIndexEngine(client, settings)


async def _create(engine: SearchIndexEngine, record: Record):
    await engine.records.save_record(record)
    return await engine.on_record_created(record)


def _ids(results):
    return [result.record.id for result in results]


@pytest.mark.asyncio
async def test_created_record_is_searchable_on_both_paths(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings(cache_enabled=False))
    try:
        result = await _create(
            engine, Record(id="m1", content="deploy the service", tags=["ops"])
        )
        assert result.found
        assert result.keyword_entries == 3
        assert result.shadow_synced == engine.client.fts_available

        assert _ids(await engine.search("deploy", KEYWORD_ONLY)) == ["m1"]
        assert _ids(await engine.search("deploy")) == ["m1"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_update_replaces_keywords_and_shadow_document(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings(cache_enabled=False))
    try:
        await _create(engine, Record(id="m1", content="deploy the service", project="infra"))

        updated = Record(id="m1", content="kubernetes upgrade notes", project="platform")
        previous = await engine.records.save_record(updated)
        await engine.on_record_updated(updated, previous_project=previous.project)

        for options in (KEYWORD_ONLY, SearchOptions()):
            assert await engine.search("deploy", options) == []
            assert _ids(await engine.search("kubernetes", options)) == ["m1"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_delete_and_archive_remove_record_from_index(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings(cache_enabled=False))
    try:
        await _create(engine, Record(id="gone", content="deploy alpha"))
        await _create(engine, Record(id="shelved", content="deploy beta"))
        await _create(engine, Record(id="kept", content="deploy gamma"))

        deleted = await engine.records.delete_record("gone")
        assert await engine.on_record_deleted("gone", deleted.project) == 2

        archived = await engine.records.archive_record("shelved")
        await engine.on_record_archived("shelved", archived.project)

        assert _ids(await engine.search("deploy", KEYWORD_ONLY)) == ["kept"]
        assert _ids(await engine.search("deploy")) == ["kept"]

        report = await engine.analyze_health()
        assert report.orphan_count == 0

        status = await engine.status()
        assert status["counts"]["active_records"] == 1
        if engine.client.fts_available:
            assert status["counts"]["shadow_documents"] == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_invalid_records_are_rejected_before_indexing(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings(cache_enabled=False))
    try:
        with pytest.raises(ValidationError) as exc_info:
            await engine.on_record_created(Record(id="big", content="x" * 10_001))
        assert exc_info.value.field == "content"

        with pytest.raises(ValidationError) as exc_info:
            await engine.on_record_created(
                Record(id="tags", content="deploy", tags=[f"t{i}" for i in range(21)])
            )
        assert exc_info.value.field == "tags"

        with pytest.raises(ValidationError):
            await engine.records.save_record(
                Record(id="loud", content="deploy", importance_score=101)
            )
        with pytest.raises(ValidationError) as exc_info:
            await engine.on_record_created(
                Record(id="vague", content="deploy", importance_score="very")
            )
        assert exc_info.value.field == "importance_score"

        assert (await engine.status())["counts"]["keyword_entries"] == 0
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_repeated_search_is_served_from_cache(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings())
    try:
        await _create(engine, Record(id="m1", content="deploy the service"))

        first = await engine.search("deploy", KEYWORD_ONLY)
        second = await engine.search("deploy", KEYWORD_ONLY)

        assert _ids(first) == _ids(second) == ["m1"]
        stats = engine.cache_stats()
        assert stats["enabled"] is True
        assert stats["hits"] == 1
        assert stats["misses"] == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_record_writes_invalidate_only_affected_cache_entries(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings())
    try:
        await _create(engine, Record(id="m1", content="deploy alpha", project="infra"))
        await _create(engine, Record(id="m2", content="deploy beta", project="web"))

        await engine.search("deploy", KEYWORD_ONLY)
        await engine.search(
            "deploy", SearchOptions(use_full_text=False, project_filter="infra")
        )
        await engine.search(
            "deploy", SearchOptions(use_full_text=False, project_filter="web")
        )
        assert len(engine.cache) == 3

        record = Record(id="m3", content="deploy gamma", project="infra")
        await _create(engine, record)

        remaining = engine.cache.keys()
        assert len(remaining) == 1
        assert remaining[0].startswith("search:web:")

        fresh = await engine.search(
            "deploy", SearchOptions(use_full_text=False, project_filter="infra")
        )
        assert sorted(_ids(fresh)) == ["m1", "m3"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_maintenance_and_explicit_clear_flush_the_cache(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings())
    try:
        await _create(engine, Record(id="m1", content="deploy alpha", project="web"))

        await engine.search(
            "deploy", SearchOptions(use_full_text=False, project_filter="web")
        )
        await engine.rebuild(reason="test")
        assert len(engine.cache) == 0

        await engine.search(
            "deploy", SearchOptions(use_full_text=False, project_filter="web")
        )
        await engine.search("deploy", KEYWORD_ONLY)
        assert engine.clear_cache("search:web:") == 1
        assert engine.clear_cache() == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_disabled_cache_reports_disabled(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, IndexSettings(cache_enabled=False))
    try:
        assert engine.cache is None
        assert engine.cache_stats() == {"enabled": False}
        assert engine.clear_cache() == 0
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_write_during_a_search_keeps_its_results_out_of_the_cache(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine = await _engine(tmp_path, IndexSettings())
    try:
        await _create(engine, Record(id="m1", content="deploy the service"))
        read_results = engine.queries.search
        writes = []

        async def _search_then_write(query, options):
            results = await read_results(query, options)
            if not writes:
                writes.append(await _create(engine, Record(id="m2", content="deploy again")))
            return results

        monkeypatch.setattr(engine.queries, "search", _search_then_write)

        assert _ids(await engine.search("deploy", KEYWORD_ONLY)) == ["m1"]
        assert len(engine.cache) == 0

        assert set(_ids(await engine.search("deploy", KEYWORD_ONLY))) == {"m1", "m2"}
        assert len(engine.cache) == 1
    finally:
        await engine.close()
