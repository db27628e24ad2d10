"""
Engine facade: the single object the record owner and the transport layer
talk to.

Record hooks update the keyword index and the shadow document in one
transaction before returning, then invalidate affected cached queries.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from db.record_store import SQLiteRecordStore
from db.sqlite_client import SQLiteClient

from .errors import ValidationError
from .keyword_index import InvertedIndexStore
from .keywords import build_keyword_entries
from .legacy_migrator import LegacyIndexMigrator
from .maintainer import IndexMaintainer
from .models import (
    IndexHealthReport,
    MigrationResult,
    OptimizeResult,
    QueryResult,
    RebuildResult,
    Record,
    ReindexResult,
    RepairResult,
    VerificationReport,
)
from .options import OptimizeOptions, SearchOptions
from .query_engine import QueryEngine
from .result_cache import ResultCache
from .settings import IndexSettings
from .shadow_index import FullTextShadowIndex

logger = logging.getLogger(__name__)


class SearchIndexEngine:
    def __init__(
        self,
        client: SQLiteClient,
        settings: Optional[IndexSettings] = None,
        cache: Optional[ResultCache] = None,
    ):
        self.client = client
        self.settings = settings or IndexSettings()
        self.records = SQLiteRecordStore(client)
        self.queries = QueryEngine(client, self.settings)
        self.maintainer = IndexMaintainer(client, self.settings)
        if cache is None and self.settings.cache_enabled:
            cache = ResultCache(
                max_entries=self.settings.cache_max_entries,
                max_bytes=self.settings.cache_max_bytes,
                default_ttl=self.settings.cache_ttl_seconds,
            )
        self.cache = cache

    async def close(self) -> None:
        if self.cache is not None:
            self.cache.clear()
        await self.client.close()

    # ------------------------------------------------------------------
    # Record lifecycle hooks
    # ------------------------------------------------------------------

    async def _index_record(self, record: Record) -> ReindexResult:
        record.validate()
        async with self.client.session() as session:
            index = InvertedIndexStore(session)
            shadow = FullTextShadowIndex(self.client, session)
            if record.archived:
                await index.remove_for_record(record.id)
                await shadow.remove(record.id)
                return ReindexResult(record_id=record.id)
            entries = await index.replace_for_record(
                record.id,
                build_keyword_entries(record, self.settings.content_keyword_limit),
            )
            synced = await shadow.upsert_document(record)
        return ReindexResult(record_id=record.id, keyword_entries=entries, shadow_synced=synced)

    async def _drop_record(self, record_id: str) -> int:
        async with self.client.session() as session:
            removed = await InvertedIndexStore(session).remove_for_record(record_id)
            await FullTextShadowIndex(self.client, session).remove(record_id)
        return removed

    def _invalidate(self, record_id: str, projects: Iterable[Optional[str]]) -> None:
        if self.cache is not None:
            dropped = self.cache.invalidate_for_record(record_id, projects)
            if dropped:
                logger.debug("Invalidated %d cached queries for %s", dropped, record_id)

    async def on_record_created(self, record: Record) -> ReindexResult:
        result = await self._index_record(record)
        self._invalidate(record.id, [record.project])
        return result

    async def on_record_updated(
        self, record: Record, previous_project: Optional[str] = None
    ) -> ReindexResult:
        result = await self._index_record(record)
        self._invalidate(record.id, [record.project, previous_project])
        return result

    async def on_record_deleted(self, record_id: str, project: Optional[str] = None) -> int:
        removed = await self._drop_record(record_id)
        self._invalidate(record_id, [project])
        return removed

    async def on_record_archived(self, record_id: str, project: Optional[str] = None) -> int:
        removed = await self._drop_record(record_id)
        self._invalidate(record_id, [project])
        return removed

    async def reindex_record(self, record_id: str) -> ReindexResult:
        current = await self.records.get_record(record_id)
        result = await self.maintainer.reindex_record(record_id)
        self._invalidate(record_id, [current.project if current else None])
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def search(
        self, query: str, options: Optional[SearchOptions] = None
    ) -> List[QueryResult]:
        options = options or SearchOptions()
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query must be a non-empty string", field="query")
        options.validate()

        if self.cache is None:
            return await self.queries.search(query, options)

        key = ResultCache.make_key(query, options)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        generation = self.cache.generation
        results = await self.queries.search(query, options)
        if self.cache.generation != generation:
            # A write invalidated the cache while this query was reading.
            return results
        self.cache.put(
            key,
            results,
            project=options.project_filter,
            record_ids=[result.record.id for result in results],
        )
        return results

    async def related_keywords(self, query: str) -> List[str]:
        return await self.queries.related_keywords(query)

    async def search_suggestions(self, prefix: str) -> List[str]:
        return await self.queries.search_suggestions(prefix)

    async def index_statistics(self) -> Dict[str, Any]:
        return await self.queries.index_statistics()

    async def analyze_query(self, query: str) -> Dict[str, Any]:
        return await self.queries.analyze_query(query)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def analyze_health(self) -> IndexHealthReport:
        return await self.maintainer.analyze_health()

    async def optimize(self, options: Optional[OptimizeOptions] = None) -> OptimizeResult:
        result = await self.maintainer.optimize(options)
        self.clear_cache()
        return result

    async def rebuild(self, reason: str = "manual") -> RebuildResult:
        result = await self.maintainer.rebuild(reason)
        self.clear_cache()
        return result

    async def repair(self, options: Optional[OptimizeOptions] = None) -> RepairResult:
        result = await self.maintainer.repair(options)
        self.clear_cache()
        return result

    async def migrate_legacy_index(self, path: Union[str, Path]) -> MigrationResult:
        result = await LegacyIndexMigrator(self.client, path).migrate()
        if result.inserted_entries:
            self.clear_cache()
        return result

    async def verify_legacy_migration(self, path: Union[str, Path]) -> VerificationReport:
        return await LegacyIndexMigrator(self.client, path).verify()

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        if self.cache is None:
            return 0
        if pattern:
            return self.cache.invalidate_pattern(pattern)
        return self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        if self.cache is None:
            return {"enabled": False}
        return dict(self.cache.stats(), enabled=True)

    async def status(self) -> Dict[str, Any]:
        payload = await self.client.get_index_status()
        payload["cache"] = self.cache_stats()
        return payload
