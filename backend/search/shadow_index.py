"""
Full-text shadow index: one FTS5 document per non-archived record.

Documents are rewritten synchronously from the record write path
(`upsert_document` / `remove`) and wholesale by `resync_all`. When the
SQLite build lacks FTS5 every operation is a no-op and `query` returns
None so the query engine can fall back to keyword retrieval.
"""

from typing import List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from db.record_store import fetch_active_records, fetch_record
from db.sqlite_client import FTS_TABLE, SQLiteClient

from .errors import ValidationError
from .models import Record

_FTS_MISSING_MARKERS = ("no such table", "no such module", "fts5: missing")


class FullTextShadowIndex:
    def __init__(self, client: SQLiteClient, session: AsyncSession):
        self.client = client
        self.session = session

    @property
    def available(self) -> bool:
        return self.client.fts_available

    async def upsert_document(self, record: Record) -> bool:
        """Replace the record's document; archived records only lose theirs."""
        if not self.available:
            return False
        await self.remove(record.id)
        if record.archived:
            return False
        await self.session.execute(
            text(
                f"INSERT INTO {FTS_TABLE}(record_id, content, project, tags, importance) "
                "VALUES (:record_id, :content, :project, :tags, :importance)"
            ),
            {
                "record_id": record.id,
                "content": record.content or "",
                "project": record.project or "",
                "tags": " ".join(record.tags or []),
                "importance": int(record.importance_score),
            },
        )
        return True

    async def resync_one(self, record_id: str) -> bool:
        """Re-read one record from the store and rewrite its document."""
        if not self.available:
            return False
        record = await fetch_record(self.session, record_id)
        if record is None:
            await self.remove(record_id)
            return False
        return await self.upsert_document(record)

    async def resync_all(self) -> int:
        """Truncate and rebuild from every non-archived record."""
        if not self.available:
            return 0
        await self.session.execute(text(f"DELETE FROM {FTS_TABLE}"))
        count = 0
        for record in await fetch_active_records(self.session):
            if await self.upsert_document(record):
                count += 1
        return count

    async def remove(self, record_id: str) -> None:
        if not self.available:
            return
        await self.session.execute(
            text(f"DELETE FROM {FTS_TABLE} WHERE record_id = :record_id"),
            {"record_id": record_id},
        )

    async def query(self, match_expression: str) -> Optional[List[Tuple[str, float]]]:
        """
        Ranked (record_id, rank_score) pairs, best first.

        rank_score is -bm25(), so larger is better. No LIMIT is applied;
        pagination happens after filtering and sorting.
        """
        if not self.available:
            return None
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(
                    text(
                        f"SELECT record_id, -bm25({FTS_TABLE}) AS rank_score "
                        f"FROM {FTS_TABLE} "
                        f"WHERE {FTS_TABLE} MATCH :expression "
                        "ORDER BY rank_score DESC"
                    ),
                    {"expression": match_expression},
                )
                rows = result.all()
        except OperationalError as exc:
            message = str(exc).lower()
            if "fts5: syntax error" in message:
                raise ValidationError(
                    f"query cannot be used for full-text search: {exc.orig}",
                    field="query",
                ) from exc
            if any(marker in message for marker in _FTS_MISSING_MARKERS):
                await self.client.mark_fts_unavailable(self.session, str(exc.orig))
                return None
            raise
        return [(row.record_id, float(row.rank_score)) for row in rows]
