"""
One-shot importer for the JSON keyword index used before `search_keywords`.

Document shape:

    {
      "keywords": {"<keyword>": {"memories": ["<id>", ...],
                                 "weight": 1.0, "last_used": "..."}},
      "last_updated": "...",
      "stats": {...}
    }

Every keyword is imported inside its own savepoint of a single transaction,
so one bad keyword costs only its own rows. Re-running over an already
migrated document inserts nothing.
"""

import asyncio
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.record_store import fetch_record
from db.sqlite_client import SQLiteClient

from .keyword_index import InvertedIndexStore
from .keywords import normalize_keyword
from .models import KeywordSource, MigrationResult, Record, VerificationReport

logger = logging.getLogger(__name__)


class LegacyDocumentError(ValueError):
    pass


def infer_source(record: Record, keyword: str) -> KeywordSource:
    """Tag match first, then project match, then content; default content."""
    if any(normalize_keyword(tag) == keyword for tag in record.tags or []):
        return KeywordSource.TAGS
    if record.project and normalize_keyword(record.project) == keyword:
        return KeywordSource.PROJECT
    return KeywordSource.CONTENT


def backup_path_for(path: Path, now_ms: Optional[int] = None) -> Path:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return path.with_name(f"{path.name}.backup.{stamp}")


def _parse_document(raw: str) -> Dict[str, Any]:
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LegacyDocumentError(f"Legacy index is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise LegacyDocumentError("Legacy index must be a JSON object")
    keywords = document.get("keywords", {})
    if keywords is None:
        keywords = {}
    if not isinstance(keywords, dict):
        raise LegacyDocumentError("Legacy index 'keywords' must be an object")
    return keywords


def _memory_ids(data: Any) -> List[str]:
    if not isinstance(data, dict):
        raise LegacyDocumentError("keyword entry must be an object")
    memories = data.get("memories", [])
    if not isinstance(memories, list):
        raise LegacyDocumentError("'memories' must be a list")
    return [str(memory_id) for memory_id in memories]


def _weight(data: Dict[str, Any]) -> float:
    raw = data.get("weight")
    if raw is None:
        return 1.0
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise LegacyDocumentError(f"weight must be a number, got {raw!r}")
    return float(raw)


class LegacyIndexMigrator:
    def __init__(self, client: SQLiteClient, path: Union[str, Path]):
        self.client = client
        self.path = Path(path)

    async def _load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        return _parse_document(raw)

    async def migrate(self) -> MigrationResult:
        try:
            keywords = await self._load()
        except (OSError, UnicodeDecodeError, LegacyDocumentError) as exc:
            logger.error("Legacy index %s is unreadable: %s", self.path, exc)
            return MigrationResult(success=False, errors=[str(exc)])

        if keywords is None:
            logger.info("No legacy index at %s; nothing to migrate", self.path)
            return MigrationResult(success=True)
        if not keywords:
            return MigrationResult(success=True)

        logger.info(
            "Migrating %d legacy keywords from %s", len(keywords), self.path
        )
        result = MigrationResult(success=True)
        records: Dict[str, Optional[Record]] = {}

        async with self.client.session() as session:
            index = InvertedIndexStore(session)
            for raw_keyword, data in keywords.items():
                keyword = normalize_keyword(raw_keyword)
                try:
                    if not keyword:
                        raise LegacyDocumentError("empty keyword")
                    async with session.begin_nested():
                        counts = await self._migrate_keyword(
                            session, index, records, keyword, data
                        )
                except Exception as exc:
                    message = f"{raw_keyword!r}: {exc}"
                    logger.warning("Legacy keyword migration failed %s", message)
                    result.errors.append(message)
                    continue
                inserted, missing, existing = counts
                result.inserted_entries += inserted
                result.skipped_missing_records += missing
                result.skipped_existing += existing
                result.migrated_keywords += 1

        result.backup_path = await self._backup(result)
        logger.info(
            "Legacy migration finished: keywords=%d inserted=%d missing=%d "
            "existing=%d errors=%d",
            result.migrated_keywords,
            result.inserted_entries,
            result.skipped_missing_records,
            result.skipped_existing,
            len(result.errors),
        )
        return result

    @staticmethod
    async def _migrate_keyword(
        session: AsyncSession,
        index: InvertedIndexStore,
        records: Dict[str, Optional[Record]],
        keyword: str,
        data: Any,
    ) -> Tuple[int, int, int]:
        memory_ids = _memory_ids(data)
        weight = _weight(data)
        inserted = missing = existing = 0
        for memory_id in memory_ids:
            if memory_id not in records:
                records[memory_id] = await fetch_record(session, memory_id)
            record = records[memory_id]
            if record is None or record.archived:
                missing += 1
                continue
            if await index.has_entry(memory_id, keyword):
                existing += 1
                continue
            await index.upsert_keyword(
                memory_id, keyword, infer_source(record, keyword), weight
            )
            inserted += 1
        return inserted, missing, existing

    async def _backup(self, result: MigrationResult) -> Optional[str]:
        target = backup_path_for(self.path)
        try:
            await asyncio.to_thread(shutil.copy2, self.path, target)
        except OSError as exc:
            logger.warning("Failed to back up legacy index %s: %s", self.path, exc)
            result.errors.append(f"backup failed: {exc}")
            return None
        return str(target)

    async def verify(self) -> VerificationReport:
        """Compare the legacy document with the index after a migration."""
        try:
            keywords = await self._load() or {}
        except (OSError, UnicodeDecodeError, LegacyDocumentError) as exc:
            return VerificationReport(is_valid=False, issues=[str(exc)])

        report = VerificationReport(is_valid=True)
        missing_pairs = 0
        async with self.client.session() as session:
            index = InvertedIndexStore(session)
            for raw_keyword, data in keywords.items():
                keyword = normalize_keyword(raw_keyword)
                try:
                    memory_ids = _memory_ids(data)
                except LegacyDocumentError as exc:
                    report.issues.append(f"{raw_keyword!r}: {exc}")
                    continue
                report.legacy_references += len(memory_ids)
                for memory_id in memory_ids:
                    record = await fetch_record(session, memory_id)
                    if record is None or record.archived:
                        continue
                    if not await index.has_entry(memory_id, keyword):
                        missing_pairs += 1

            report.indexed_references = int(
                (
                    await session.execute(
                        text(
                            "SELECT COUNT(*) FROM search_keywords "
                            "WHERE record_id IN (SELECT id FROM work_memories)"
                        )
                    )
                ).scalar()
                or 0
            )
            report.orphan_count = int(
                (
                    await session.execute(
                        text(
                            "SELECT COUNT(*) FROM search_keywords "
                            "WHERE record_id NOT IN (SELECT id FROM work_memories)"
                        )
                    )
                ).scalar()
                or 0
            )
            report.duplicate_count = int(
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

        if missing_pairs:
            report.issues.append(f"{missing_pairs} legacy references are not indexed")
        if report.duplicate_count:
            report.issues.append(f"{report.duplicate_count} duplicate keyword entries")
        if report.orphan_count:
            report.issues.append(
                f"{report.orphan_count} entries reference missing records"
            )
        report.is_valid = not report.issues
        return report
