"""
SQL schema migrations for the index database.

Files live under backend/db/migrations and are named `0001_description.sql`.
Each applied version is recorded in `schema_migrations` together with a
checksum of its (line-ending normalized) text; editing an applied file is a
boot error. Concurrent runners against the same database file serialize on
a file lock.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_NAME = re.compile(r"^(?P<version>\d{4,})_(?P<label>[\w\-]+)\.sql$")
_ADD_COLUMN = re.compile(r"^\s*ALTER\s+TABLE\s+\S+\s+ADD\s+COLUMN\b", re.IGNORECASE)
_LINE_COMMENT = re.compile(r"--[^\n]*")


@dataclass(frozen=True)
class MigrationFile:
    version: str
    label: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """
    Resolve the database file behind a sqlite SQLAlchemy URL.

    Returns None for in-memory databases. Non-sqlite URLs are rejected.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = unquote(database_url[len(prefix) :].split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migrations; "
        "expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def checksum_sql(content: bytes) -> str:
    try:
        payload = (
            content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
        )
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on statement boundaries, dropping comment-only chunks."""
    statements: List[str] = []
    buffer = ""
    for line in script.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            if _LINE_COMMENT.sub("", statement).strip(" ;\n\t"):
                statements.append(statement)
            buffer = ""
    if _LINE_COMMENT.sub("", buffer).strip(" ;\n\t"):
        statements.append(buffer.strip())
    return statements


class MigrationRunner:
    """Discover and apply pending SQL migrations."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = (
            Path(migrations_dir)
            if migrations_dir is not None
            else Path(__file__).resolve().parent / "migrations"
        )
        self.lock_file_path = self._resolve_lock_path(
            lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "")
        )
        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                logger.warning(
                    "Ignoring malformed DB_MIGRATION_LOCK_TIMEOUT_SEC=%r", env_timeout
                )
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _resolve_lock_path(self, configured: Union[Path, str]) -> Optional[Path]:
        value = str(configured or "").strip()
        if value:
            candidate = Path(value).expanduser()
            if not candidate.is_absolute() and self.database_file is not None:
                candidate = self.database_file.parent / candidate
            return candidate.resolve()
        if self.database_file is None:
            return None
        return Path(f"{self.database_file}.migrate.lock")

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.is_dir():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_NAME.match(path.name)
            if not match:
                continue
            found.append(
                MigrationFile(
                    version=match.group("version"),
                    label=match.group("label"),
                    path=path,
                    checksum=checksum_sql(path.read_bytes()),
                )
            )
        return found

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    async def pending(self) -> List[str]:
        """Versions present on disk but not yet recorded."""
        return await asyncio.to_thread(self._pending_sync)

    def _pending_sync(self) -> List[str]:
        migrations = self.discover()
        if self.database_file is None or not self.database_file.exists():
            return [migration.version for migration in migrations]
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            applied = self._applied_checksums(conn)
        return [m.version for m in migrations if m.version not in applied]

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from the ORM metadata on every boot.
        if not migrations or self.database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock {self.lock_file_path} "
                f"after {self.lock_timeout_seconds}s"
            ) from exc

    def _apply(self, migrations: List[MigrationFile]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied_now: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            recorded = self._applied_checksums(conn)
            for migration in migrations:
                checksum = recorded.get(migration.version)
                if checksum is not None:
                    if checksum != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version} "
                            f"({migration.label}): recorded={checksum} "
                            f"current={migration.checksum}"
                        )
                    continue
                self._run_script(conn, migration.path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied_now.append(migration.version)
                logger.info(
                    "Applied schema migration %s (%s)", migration.version, migration.label
                )
        return applied_now

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
        )
        conn.commit()

    @staticmethod
    def _applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(version): str(checksum) for version, checksum in rows}

    @staticmethod
    def _run_script(conn: sqlite3.Connection, script: str) -> None:
        for statement in split_sql_statements(script):
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as exc:
                # Databases created from current metadata already carry the
                # columns that older databases gain through ADD COLUMN.
                if _ADD_COLUMN.match(_LINE_COMMENT.sub("", statement)) and (
                    "duplicate column name" in str(exc).lower()
                ):
                    continue
                raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Startup hook used by SQLiteClient.init_db."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
