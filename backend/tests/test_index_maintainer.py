from pathlib import Path
from typing import Iterable, Tuple

import pytest
from sqlalchemy import text

from db.sqlite_client import SQLiteClient
from search.engine import SearchIndexEngine
from search.errors import MaintenanceError, NotFoundError
from search.keyword_index import InvertedIndexStore
from search.keywords import build_keyword_entries
from search.maintainer import IndexMaintainer
from search.models import Record
from search.options import OptimizeOptions
from search.settings import IndexSettings


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _engine(tmp_path: Path, records: Iterable[Record] = ()) -> SearchIndexEngine:
    client = SQLiteClient(_sqlite_url(tmp_path / "index.db"))
    await client.init_db()
    engine = SearchIndexEngine(client, IndexSettings(cache_enabled=False))
    for record in records:
        await engine.records.save_record(record)
        await engine.on_record_created(record)
    return engine


async def _plant(client: SQLiteClient, rows: Iterable[Tuple[str, str]]) -> None:
    async with client.session() as session:
        for record_id, keyword in rows:
            await session.execute(
                text(
                    "INSERT INTO search_keywords (record_id, keyword, source, weight) "
                    "VALUES (:record_id, :keyword, 'content', 1.0)"
                ),
                {"record_id": record_id, "keyword": keyword},
            )


async def _keywords_for(client: SQLiteClient, record_id: str):
    async with client.session() as session:
        rows = await session.execute(
            text(
                "SELECT keyword FROM search_keywords WHERE record_id = :record_id "
                "ORDER BY id"
            ),
            {"record_id": record_id},
        )
        return [row.keyword for row in rows]


def _m1() -> Record:
    return Record(id="m1", content="deploy the service", tags=["ops"])


@pytest.mark.asyncio
async def test_orphan_entry_is_reported_and_cleaned(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m2", "foo")])

        report = await engine.analyze_health()
        assert report.orphan_count == 1
        assert report.total_references == 4
        assert report.health_score < 100
        assert report.issues and report.recommendations

        result = await engine.optimize(OptimizeOptions(cleanup_orphans=True))
        assert result.orphans_removed == 1
        assert result.before.orphan_count == 1
        assert result.after.orphan_count == 0

        after = await engine.analyze_health()
        assert after.orphan_count == 0
        assert after.health_score == 100
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_archived_record_entries_count_as_orphans(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await engine.records.archive_record("m1")
        report = await engine.analyze_health()
        assert report.orphan_count == 3
        assert report.active_records == 0
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_planted_duplicate_is_detected_and_removed(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m1", "deploy")])

        report = await engine.analyze_health()
        assert report.duplicate_count == 1
        assert report.orphan_count == 0
        assert report.health_score == 99

        result = await engine.optimize()
        assert result.duplicates_removed == 1
        assert result.after.duplicate_count == 0
        assert (await _keywords_for(engine.client, "m1")).count("deploy") == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_merge_similar_folds_case_and_whitespace_variants(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m1", " Deploy "), ("m1", "Kubernetes")])

        result = await engine.optimize(
            OptimizeOptions(cleanup_orphans=False, remove_duplicates=False, analyze=False)
        )
        assert result.keywords_merged == 2
        assert result.analyzed is False

        keywords = await _keywords_for(engine.client, "m1")
        assert " Deploy " not in keywords
        assert "Kubernetes" not in keywords
        assert keywords.count("deploy") == 1
        assert "kubernetes" in keywords
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_low_frequency_pruning_is_opt_in(tmp_path: Path) -> None:
    engine = await _engine(
        tmp_path,
        [
            Record(id="r1", content="deploy alpha"),
            Record(id="r2", content="deploy beta"),
        ],
    )
    try:
        default_pass = await engine.optimize()
        assert default_pass.low_frequency_removed == 0
        assert default_pass.analyzed is True

        pruned = await engine.optimize(OptimizeOptions(remove_low_frequency=True))
        assert pruned.low_frequency_removed == 2
        assert await _keywords_for(engine.client, "r1") == ["deploy"]
        assert await _keywords_for(engine.client, "r2") == ["deploy"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_failed_optimize_step_rolls_back_the_whole_pass(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m2", "foo")])

        async def _boom(session):
            raise RuntimeError("disk full")

        monkeypatch.setattr(IndexMaintainer, "_remove_duplicates", staticmethod(_boom))

        with pytest.raises(MaintenanceError) as exc_info:
            await engine.optimize()
        assert exc_info.value.operation == "optimize"
        assert exc_info.value.step == "remove_duplicates"

        report = await engine.analyze_health()
        assert report.orphan_count == 1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_rebuild_matches_fresh_extraction_exactly(tmp_path: Path) -> None:
    records = [
        _m1(),
        Record(id="m2", content="rollback staging cluster", project="Infra"),
    ]
    engine = await _engine(tmp_path, records)
    try:
        await _plant(engine.client, [("m1", "stale"), ("m1", "deploy"), ("gone", "foo")])

        result = await engine.rebuild(reason="test")
        expected = [
            entry
            for record in await engine.records.list_active_records()
            for entry in build_keyword_entries(record)
        ]
        assert result.records_indexed == 2
        assert result.keyword_entries == len(expected)
        assert result.reason == "test"

        report = await engine.analyze_health()
        assert report.total_references == len(expected)
        assert report.keyword_count == len({entry.keyword for entry in expected})
        assert report.orphan_count == 0
        assert report.duplicate_count == 0
        assert "stale" not in await _keywords_for(engine.client, "m1")

        status = await engine.status()
        assert status["meta"]["last_rebuild_reason"] == "test"
        if engine.client.fts_available:
            assert result.shadow_documents == 2
            assert status["counts"]["shadow_documents"] == 2
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_repair_fixes_orphans_with_a_single_optimize(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m2", "foo")])
        result = await engine.repair()
        assert result.actions == ["optimize"]
        assert result.rebuilt is False
        assert result.health.health_score == 100
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_repair_falls_back_to_rebuild_when_optimize_cannot_converge(
    tmp_path: Path,
) -> None:
    engine = await _engine(tmp_path)
    try:
        for index in range(3):
            await engine.records.save_record(
                Record(id=f"r{index}", content=f"deploy notes number{index}")
            )

        before = await engine.analyze_health()
        assert before.coverage == 0
        assert before.health_score < engine.settings.healthy_score

        result = await engine.repair()
        assert result.actions == ["optimize", "optimize", "rebuild"]
        assert result.optimize_attempts == 2
        assert result.rebuilt is True
        assert result.health.coverage == 100
        assert result.health.health_score == 100
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_reindex_record_replaces_entries_from_current_content(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await engine.records.save_record(Record(id="m1", content="kubernetes upgrade"))

        result = await engine.reindex_record("m1")
        assert result.found
        assert result.keyword_entries == 2
        assert result.shadow_synced == engine.client.fts_available

        async with engine.client.session() as session:
            index = InvertedIndexStore(session)
            assert await index.lookup_exact("deploy") == []
            assert await index.lookup_exact("kubernetes") == ["m1"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_reindex_missing_or_archived_record_reports_not_found(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        missing = await engine.reindex_record("nope")
        assert not missing.found
        assert isinstance(missing.error, NotFoundError)
        assert missing.to_dict()["found"] is False

        await engine.records.archive_record("m1")
        archived = await engine.reindex_record("m1")
        assert not archived.found
        assert await _keywords_for(engine.client, "m1") == []
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_penalties_are_configurable(tmp_path: Path) -> None:
    engine = await _engine(tmp_path, [_m1()])
    try:
        await _plant(engine.client, [("m1", "deploy"), ("m1", "service"), ("m2", "foo")])

        default = await engine.analyze_health()
        strict = await IndexMaintainer(
            engine.client, IndexSettings(duplicate_penalty=5.0)
        ).analyze_health()
        lenient = await IndexMaintainer(
            engine.client, IndexSettings(orphan_threshold_pct=50.0)
        ).analyze_health()

        assert strict.health_score < default.health_score
        assert lenient.health_score > default.health_score
        assert not any("orphaned" in issue for issue in lenient.issues)
    finally:
        await engine.close()
