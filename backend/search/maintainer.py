"""
Index health diagnostics and repair.

optimize and rebuild each run in exactly one transaction. A failing step
rolls the whole pass back and surfaces as MaintenanceError naming the step.
Callers serialize maintenance calls; nothing here takes a lock.
"""

import logging
import time
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.record_store import fetch_active_records, fetch_record
from db.sqlite_client import FTS_TABLE, SQLiteClient

from .errors import MaintenanceError, NotFoundError
from .keyword_index import InvertedIndexStore
from .keywords import build_keyword_entries, normalize_keyword
from .models import (
    IndexHealthReport,
    OptimizeResult,
    RebuildResult,
    ReindexResult,
    RepairResult,
    utc_now_naive,
)
from .options import OptimizeOptions
from .settings import IndexSettings
from .shadow_index import FullTextShadowIndex

logger = logging.getLogger(__name__)

MAX_OPTIMIZE_ATTEMPTS = 2

_ACTIVE_IDS = "SELECT id FROM work_memories WHERE is_archived = 0"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class IndexMaintainer:
    def __init__(self, client: SQLiteClient, settings: Optional[IndexSettings] = None):
        self.client = client
        self.settings = settings or IndexSettings()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def analyze_health(self) -> IndexHealthReport:
        async with self.client.session() as session:
            return await self._analyze_health(session)

    async def _analyze_health(self, session: AsyncSession) -> IndexHealthReport:
        totals = (
            await session.execute(
                text(
                    "SELECT COUNT(DISTINCT keyword) AS keywords, COUNT(*) AS refs "
                    "FROM search_keywords"
                )
            )
        ).one()
        orphan_count = int(
            (
                await session.execute(
                    text(
                        "SELECT COUNT(*) FROM search_keywords "
                        f"WHERE record_id NOT IN ({_ACTIVE_IDS})"
                    )
                )
            ).scalar()
            or 0
        )
        duplicate_count = int(
            (
                await session.execute(
                    text(
                        "SELECT COALESCE(SUM(copies - 1), 0) FROM ("
                        "SELECT COUNT(*) AS copies FROM search_keywords "
                        "GROUP BY record_id, keyword HAVING COUNT(*) > 1"
                        ")"
                    )
                )
            ).scalar()
            or 0
        )
        referenced_records = int(
            (
                await session.execute(
                    text(
                        "SELECT COUNT(DISTINCT record_id) FROM search_keywords "
                        f"WHERE record_id IN ({_ACTIVE_IDS})"
                    )
                )
            ).scalar()
            or 0
        )
        active_records = int(
            (
                await session.execute(
                    text("SELECT COUNT(*) FROM work_memories WHERE is_archived = 0")
                )
            ).scalar()
            or 0
        )

        report = IndexHealthReport(
            health_score=100,
            keyword_count=int(totals.keywords or 0),
            total_references=int(totals.refs or 0),
            orphan_count=orphan_count,
            duplicate_count=duplicate_count,
            referenced_records=referenced_records,
            active_records=active_records,
        )
        self._score(report)
        return report

    def _score(self, report: IndexHealthReport) -> None:
        settings = self.settings
        score = 100.0

        if report.orphan_count and report.total_references:
            orphan_pct = report.orphan_count / report.total_references * 100
            if orphan_pct > settings.orphan_threshold_pct:
                score -= (orphan_pct - settings.orphan_threshold_pct) * (
                    settings.orphan_penalty_per_pct
                )
                report.issues.append(
                    f"{report.orphan_count} orphaned keyword entries "
                    f"({orphan_pct:.1f}% of references)"
                )
                report.recommendations.append("Run optimize with cleanup_orphans")

        if report.duplicate_count:
            score -= min(
                settings.duplicate_penalty_cap,
                report.duplicate_count * settings.duplicate_penalty,
            )
            report.issues.append(
                f"{report.duplicate_count} duplicate keyword entries"
            )
            report.recommendations.append("Run optimize with remove_duplicates")

        if report.active_records:
            report.coverage = round(
                report.referenced_records / report.active_records * 100, 2
            )
            live_references = report.total_references - report.orphan_count
            report.keyword_density = round(live_references / report.active_records, 2)
            if report.coverage < settings.coverage_target_pct:
                score -= (settings.coverage_target_pct - report.coverage) / 2
                report.issues.append(
                    f"Only {report.coverage:.1f}% of active records are indexed"
                )
                report.recommendations.append("Rebuild the index")
            if (
                settings.min_keyword_density > 0
                and report.keyword_density < settings.min_keyword_density
            ):
                score -= settings.density_penalty
                report.issues.append(
                    f"Low keyword density ({report.keyword_density:.2f} per record)"
                )
                report.recommendations.append("Rebuild the index")
        else:
            report.coverage = 100.0

        report.health_score = int(max(0, min(100, round(score))))

    # ------------------------------------------------------------------
    # Optimize
    # ------------------------------------------------------------------

    async def optimize(self, options: Optional[OptimizeOptions] = None) -> OptimizeResult:
        options = options or OptimizeOptions()
        started = time.perf_counter()
        result = OptimizeResult(before=await self.analyze_health())
        logger.info("Index optimize started (health=%s)", result.before.health_score)

        step = "begin"
        try:
            async with self.client.session() as session:
                shadow = FullTextShadowIndex(self.client, session)
                if options.cleanup_orphans:
                    step = "cleanup_orphans"
                    result.orphans_removed = await self._cleanup_orphans(
                        session, shadow
                    )
                if options.remove_duplicates:
                    step = "remove_duplicates"
                    result.duplicates_removed = await self._remove_duplicates(session)
                if options.merge_similar:
                    step = "merge_similar"
                    result.keywords_merged = await self._merge_similar(session)
                if options.remove_low_frequency:
                    step = "remove_low_frequency"
                    result.low_frequency_removed = await self._remove_low_frequency(
                        session,
                        options.low_frequency_min_records
                        or self.settings.low_frequency_min_records,
                    )
                if options.analyze:
                    step = "analyze"
                    await session.execute(text("ANALYZE search_keywords"))
                    result.analyzed = True
                step = "commit"
        except Exception as exc:
            logger.exception("Index optimize rolled back at step %s", step)
            raise MaintenanceError("optimize", step, exc) from exc

        result.after = await self.analyze_health()
        result.processing_time_ms = _elapsed_ms(started)
        logger.info(
            "Index optimize finished: orphans=%d duplicates=%d merged=%d "
            "low_frequency=%d health=%d->%d",
            result.orphans_removed,
            result.duplicates_removed,
            result.keywords_merged,
            result.low_frequency_removed,
            result.before.health_score,
            result.after.health_score,
        )
        return result

    @staticmethod
    async def _cleanup_orphans(
        session: AsyncSession, shadow: FullTextShadowIndex
    ) -> int:
        removed = await session.execute(
            text(
                "DELETE FROM search_keywords "
                f"WHERE record_id NOT IN ({_ACTIVE_IDS})"
            )
        )
        if shadow.available:
            await session.execute(
                text(
                    f"DELETE FROM {FTS_TABLE} "
                    f"WHERE record_id NOT IN ({_ACTIVE_IDS})"
                )
            )
        return removed.rowcount or 0

    @staticmethod
    async def _remove_duplicates(session: AsyncSession) -> int:
        removed = await session.execute(
            text(
                "DELETE FROM search_keywords WHERE id NOT IN ("
                "SELECT MIN(id) FROM search_keywords GROUP BY record_id, keyword"
                ")"
            )
        )
        return removed.rowcount or 0

    @staticmethod
    async def _merge_similar(session: AsyncSession) -> int:
        """Fold case/whitespace variants of a keyword into its normalized form."""
        rows = (
            await session.execute(
                text("SELECT id, record_id, keyword FROM search_keywords ORDER BY id")
            )
        ).all()
        merged = 0
        for row in rows:
            normalized = normalize_keyword(row.keyword)
            if normalized == row.keyword:
                continue
            if not normalized:
                await session.execute(
                    text("DELETE FROM search_keywords WHERE id = :id"), {"id": row.id}
                )
                merged += 1
                continue
            existing = await session.execute(
                text(
                    "SELECT 1 FROM search_keywords "
                    "WHERE record_id = :record_id AND keyword = :keyword AND id != :id "
                    "LIMIT 1"
                ),
                {"record_id": row.record_id, "keyword": normalized, "id": row.id},
            )
            if existing.first() is not None:
                await session.execute(
                    text("DELETE FROM search_keywords WHERE id = :id"), {"id": row.id}
                )
            else:
                await session.execute(
                    text("UPDATE search_keywords SET keyword = :keyword WHERE id = :id"),
                    {"keyword": normalized, "id": row.id},
                )
            merged += 1
        return merged

    @staticmethod
    async def _remove_low_frequency(session: AsyncSession, min_records: int) -> int:
        removed = await session.execute(
            text(
                "DELETE FROM search_keywords WHERE keyword IN ("
                "SELECT keyword FROM search_keywords GROUP BY keyword "
                "HAVING COUNT(DISTINCT record_id) < :min_records"
                ")"
            ),
            {"min_records": int(min_records)},
        )
        return removed.rowcount or 0

    # ------------------------------------------------------------------
    # Rebuild / repair
    # ------------------------------------------------------------------

    async def rebuild(self, reason: str = "manual") -> RebuildResult:
        """Recreate both indexes from the active records in one transaction."""
        started = time.perf_counter()
        logger.info("Index rebuild started (reason=%s)", reason)
        step = "begin"
        try:
            async with self.client.session() as session:
                index = InvertedIndexStore(session)
                step = "clear_keywords"
                await session.execute(text("DELETE FROM search_keywords"))

                step = "index_records"
                records = await fetch_active_records(session)
                entries = 0
                for record in records:
                    entries += await index.add_entries(
                        build_keyword_entries(record, self.settings.content_keyword_limit)
                    )

                step = "resync_shadow"
                documents = await FullTextShadowIndex(self.client, session).resync_all()

                step = "record_meta"
                finished_at = utc_now_naive().isoformat()
                await self.client.set_index_meta(session, "last_rebuild_at", finished_at)
                await self.client.set_index_meta(session, "last_rebuild_reason", reason)
        except Exception as exc:
            logger.exception("Index rebuild rolled back at step %s", step)
            raise MaintenanceError("rebuild", step, exc) from exc

        result = RebuildResult(
            records_indexed=len(records),
            keyword_entries=entries,
            shadow_documents=documents,
            reason=reason,
            finished_at=finished_at,
            processing_time_ms=_elapsed_ms(started),
        )
        logger.info(
            "Index rebuild finished: records=%d entries=%d documents=%d",
            result.records_indexed,
            result.keyword_entries,
            result.shadow_documents,
        )
        return result

    async def repair(self, options: Optional[OptimizeOptions] = None) -> RepairResult:
        """
        Optimize up to MAX_OPTIMIZE_ATTEMPTS times while the index is
        unhealthy, then fall back to a rebuild.
        """
        result = RepairResult(health=await self.analyze_health())
        while (
            result.health.health_score < self.settings.healthy_score
            and result.optimize_attempts < MAX_OPTIMIZE_ATTEMPTS
        ):
            optimized = await self.optimize(options)
            result.optimize_attempts += 1
            result.actions.append("optimize")
            result.health = optimized.after

        if result.health.health_score < self.settings.healthy_score:
            await self.rebuild(reason="repair")
            result.rebuilt = True
            result.actions.append("rebuild")
            result.health = await self.analyze_health()
        return result

    async def reindex_record(self, record_id: str) -> ReindexResult:
        """Re-derive both indexes for one record from the record store."""
        async with self.client.session() as session:
            index = InvertedIndexStore(session)
            shadow = FullTextShadowIndex(self.client, session)
            record = await fetch_record(session, record_id)
            synced = await shadow.resync_one(record_id)
            if record is None or record.archived:
                await index.remove_for_record(record_id)
                return ReindexResult(record_id=record_id, error=NotFoundError(record_id))
            entries = await index.replace_for_record(
                record_id,
                build_keyword_entries(record, self.settings.content_keyword_limit),
            )
        return ReindexResult(
            record_id=record_id, keyword_entries=entries, shadow_synced=synced
        )
