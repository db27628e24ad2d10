"""
SQLite client for the memory search index.

This module owns:
- ORM models for the canonical record table and the index tables
- Engine/session lifecycle, with store failures surfaced as
  StoreUnavailableError
- Schema bootstrap (create_all + SQL migrations + FTS5 probe)
- index_meta bookkeeping
"""

import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    event,
    func,
    select,
    text,
)
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from search.errors import StoreUnavailableError

from .migration_runner import apply_pending_migrations

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

Base = declarative_base()

FTS_TABLE = "memory_fts"

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """Python 3.12+ deprecates sqlite3's implicit datetime adapter."""
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_explicit_transactions(engine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself.

    The sqlite driver otherwise defers BEGIN until the first DML statement,
    so a leading SAVEPOINT opens its own transaction and RELEASE commits it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


# =============================================================================
# ORM Models
# =============================================================================


class WorkMemory(Base):
    """Canonical record row. Written by the record store, read by the index."""

    __tablename__ = "work_memories"

    id = Column(String(64), primary_key=True)
    content = Column(Text, nullable=False)
    tags = Column(Text, nullable=False, default="[]", server_default=text("'[]'"))
    project = Column(String(255), nullable=True)
    importance_score = Column(
        Integer, nullable=False, default=50, server_default=text("50")
    )
    access_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_by = Column(String(64), nullable=False, default="unknown")
    session_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)
    is_archived = Column(Boolean, nullable=False, default=False)


class SearchKeyword(Base):
    """
    Inverted index entry.

    (record_id, keyword) is kept unique by the writers rather than by a
    UNIQUE index so that anomalies imported from older data stay visible
    to the health check instead of failing the import.
    """

    __tablename__ = "search_keywords"
    __table_args__ = (
        Index("idx_search_keywords_record_keyword", "record_id", "keyword"),
        Index("idx_search_keywords_keyword", "keyword"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(String(64), nullable=False)
    keyword = Column(String(255), nullable=False)
    source = Column(String(16), nullable=False, default="content")
    weight = Column(Float, nullable=False, default=1.0)


class IndexMeta(Base):
    """Index runtime metadata and capability flags."""

    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class SchemaMigration(Base):
    """Applied schema migration records."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite access for the index.

    Components receive this client by injection; there is no module-level
    instance.
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_index.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        _enable_explicit_transactions(self.engine)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.fts_available = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def init_db(self) -> Dict[str, bool]:
        """Create tables, apply SQL migrations and probe FTS5 support."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            await apply_pending_migrations(self.database_url)
            async with self.engine.begin() as conn:
                capabilities = await conn.run_sync(self._setup_index_infra)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"Failed to initialize index store: {exc}") from exc
        self.fts_available = capabilities.get("fts_available", False)
        return capabilities

    def _setup_index_infra(self, connection) -> Dict[str, bool]:
        fts_available = False
        try:
            connection.execute(
                text(
                    f"CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} "
                    "USING fts5("
                    "record_id UNINDEXED, "
                    "content, "
                    "project, "
                    "tags, "
                    "importance UNINDEXED"
                    ")"
                )
            )
            fts_available = True
        except Exception as exc:
            # SQLite builds without FTS5 keep working on the keyword path.
            logger.warning("FTS5 unavailable, full-text retrieval disabled: %s", exc)

        self._sync_set_index_meta(
            connection,
            "fts_available",
            "1" if fts_available else "0",
            _utc_now_naive().isoformat(),
        )
        return {"fts_available": fts_available}

    @staticmethod
    def _sync_set_index_meta(connection, key: str, value: str, updated_at: str):
        connection.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": updated_at},
        )

    async def set_index_meta(self, session: AsyncSession, key: str, value: str) -> None:
        await session.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_now_naive().isoformat()},
        )

    async def get_runtime_meta(self, key: str) -> Optional[str]:
        key_value = (key or "").strip()
        if not key_value:
            return None
        async with self.session() as session:
            result = await session.execute(
                select(IndexMeta.value).where(IndexMeta.key == key_value)
            )
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def mark_fts_unavailable(self, session: AsyncSession, reason: str) -> None:
        if self.fts_available:
            logger.warning("Disabling full-text retrieval: %s", reason)
        self.fts_available = False
        await self.set_index_meta(session, "fts_available", "0")

    async def close(self):
        """Close the database connection."""
        self._closed = True
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """
        Transactional session: commit on success, roll back on any error.

        Connection-level failures surface as StoreUnavailableError.
        """
        if self._closed:
            raise StoreUnavailableError("Index store client is closed")
        try:
            async with self.async_session() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            raise StoreUnavailableError(f"Index store unavailable: {exc}") from exc

    async def get_index_status(self) -> Dict[str, Any]:
        """Return capabilities, table counts and index_meta."""
        async with self.session() as session:
            active_count = await session.execute(
                select(func.count())
                .select_from(WorkMemory)
                .where(WorkMemory.is_archived == False)
            )
            keyword_rows = await session.execute(
                select(func.count()).select_from(SearchKeyword)
            )
            fts_exists_result = await session.execute(
                text(
                    "SELECT 1 FROM sqlite_master "
                    "WHERE type = 'table' AND name = :name LIMIT 1"
                ),
                {"name": FTS_TABLE},
            )
            fts_exists = fts_exists_result.first() is not None
            self.fts_available = self.fts_available and fts_exists

            shadow_count = 0
            if self.fts_available:
                shadow_result = await session.execute(
                    text(f"SELECT COUNT(*) FROM {FTS_TABLE}")
                )
                shadow_count = int(shadow_result.scalar() or 0)

            meta_rows = await session.execute(select(IndexMeta))
            meta = {row.key: row.value for row in meta_rows.scalars().all()}

            return {
                "capabilities": {"fts_available": self.fts_available},
                "counts": {
                    "active_records": int(active_count.scalar() or 0),
                    "keyword_entries": int(keyword_rows.scalar() or 0),
                    "shadow_documents": shadow_count,
                },
                "meta": meta,
            }


def database_url_from_env() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError(
            "DATABASE_URL environment variable is not set. Please check your .env file."
        )
    return database_url
