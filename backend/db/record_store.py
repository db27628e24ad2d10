"""
Canonical record access used by the index engine.

The engine only reads through `get_record`, `list_active_records` and
`record_exists`; the write methods belong to whoever owns the record
lifecycle and are here so that owner and the tests share one mapping.
"""

import json
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from search.models import Record, utc_now_naive

from .sqlite_client import SQLiteClient, WorkMemory


def _decode_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


def row_to_record(row: WorkMemory) -> Record:
    return Record(
        id=row.id,
        content=row.content or "",
        tags=_decode_tags(row.tags),
        project=row.project,
        importance_score=int(row.importance_score if row.importance_score is not None else 50),
        created_at=row.created_at,
        updated_at=row.updated_at,
        archived=bool(row.is_archived),
        access_count=int(row.access_count or 0),
        created_by=row.created_by or "unknown",
        session_id=row.session_id,
    )


async def fetch_record(session: AsyncSession, record_id: str) -> Optional[Record]:
    row = await session.get(WorkMemory, record_id)
    return row_to_record(row) if row is not None else None


async def fetch_active_records(session: AsyncSession) -> List[Record]:
    result = await session.execute(
        select(WorkMemory)
        .where(WorkMemory.is_archived == False)
        .order_by(WorkMemory.id)
    )
    return [row_to_record(row) for row in result.scalars().all()]


class SQLiteRecordStore:
    """Record store over the `work_memories` table."""

    def __init__(self, client: SQLiteClient):
        self.client = client

    async def get_record(self, record_id: str) -> Optional[Record]:
        async with self.client.session() as session:
            return await fetch_record(session, record_id)

    async def list_active_records(self) -> List[Record]:
        async with self.client.session() as session:
            return await fetch_active_records(session)

    async def record_exists(self, record_id: str) -> bool:
        """True when the record exists and is not archived."""
        async with self.client.session() as session:
            result = await session.execute(
                select(WorkMemory.id).where(
                    WorkMemory.id == record_id, WorkMemory.is_archived == False
                )
            )
            return result.scalar_one_or_none() is not None

    async def save_record(self, record: Record) -> Optional[Record]:
        """
        Insert or replace a record.

        Returns the previously stored version (None on insert) so callers
        can tell the index which project the record used to belong to.
        """
        record.validate()
        async with self.client.session() as session:
            row = await session.get(WorkMemory, record.id)
            previous = row_to_record(row) if row is not None else None
            if row is None:
                row = WorkMemory(id=record.id, created_at=record.created_at)
                session.add(row)
            row.content = record.content
            row.tags = json.dumps(list(record.tags or []), ensure_ascii=False)
            row.project = record.project
            row.importance_score = int(record.importance_score)
            row.access_count = int(record.access_count)
            row.created_by = record.created_by
            row.session_id = record.session_id
            row.is_archived = bool(record.archived)
            row.updated_at = record.updated_at or utc_now_naive()
            return previous

    async def archive_record(self, record_id: str) -> Optional[Record]:
        """Mark a record archived. Returns the archived record, or None."""
        async with self.client.session() as session:
            row = await session.get(WorkMemory, record_id)
            if row is None:
                return None
            row.is_archived = True
            row.updated_at = utc_now_naive()
            return row_to_record(row)

    async def delete_record(self, record_id: str) -> Optional[Record]:
        """Delete a record. Returns what was deleted, or None."""
        async with self.client.session() as session:
            row = await session.get(WorkMemory, record_id)
            if row is None:
                return None
            record = row_to_record(row)
            await session.execute(delete(WorkMemory).where(WorkMemory.id == record_id))
            return record
