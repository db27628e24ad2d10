"""
Process-level runtime for the search index service.

This module provides:
1) Engine lifecycle (lazy start against a client factory, explicit shutdown).
2) The maintenance lane: optimize/rebuild/repair/migration calls run one at
   a time, while queries and record hooks bypass it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from db import SQLiteClient, database_url_from_env
from search.engine import SearchIndexEngine
from search.errors import StoreUnavailableError
from search.settings import IndexSettings

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MaintenanceLane:
    """Serializes maintenance operations; at most one runs at any time."""

    def __init__(self) -> None:
        self._wait_warn_ms = _env_int("RUNTIME_MAINTENANCE_WAIT_WARN_MS", 2000, minimum=1)
        self._lock = asyncio.Lock()
        self._guard = asyncio.Lock()
        self._waiting = 0
        self._active_operation: Optional[str] = None
        self._last_operation: Optional[Dict[str, Any]] = None

    async def run(self, *, operation: str, task: Callable[[], Awaitable[Any]]) -> Any:
        wait_start = time.monotonic()
        async with self._guard:
            self._waiting += 1

        async with self._lock:
            waited_ms = int((time.monotonic() - wait_start) * 1000)
            async with self._guard:
                self._waiting = max(0, self._waiting - 1)
                self._active_operation = operation
            if waited_ms >= self._wait_warn_ms:
                logger.warning(
                    "Maintenance operation %s waited %dms for the lane",
                    operation,
                    waited_ms,
                )

            started_at = _utc_iso_now()
            ok = False
            try:
                result = await task()
                ok = True
                return result
            finally:
                async with self._guard:
                    self._active_operation = None
                    self._last_operation = {
                        "operation": operation,
                        "started_at": started_at,
                        "finished_at": _utc_iso_now(),
                        "waited_ms": waited_ms,
                        "ok": ok,
                    }

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "active_operation": self._active_operation,
                "waiting": self._waiting,
                "last_operation": self._last_operation,
                "wait_warn_ms": self._wait_warn_ms,
            }


def default_client_factory() -> SQLiteClient:
    return SQLiteClient(database_url_from_env())


class RuntimeState:
    def __init__(self) -> None:
        self.maintenance_lane = MaintenanceLane()
        self._engine: Optional[SearchIndexEngine] = None
        self._start_lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> SearchIndexEngine:
        if self._engine is None:
            raise StoreUnavailableError("Search index runtime is not started")
        return self._engine

    async def ensure_started(
        self,
        client_factory: Callable[[], SQLiteClient] = default_client_factory,
        settings: Optional[IndexSettings] = None,
    ) -> SearchIndexEngine:
        async with self._start_lock:
            if self._engine is not None:
                return self._engine
            client = client_factory()
            capabilities = await client.init_db()
            self._engine = SearchIndexEngine(
                client, settings=settings or IndexSettings.from_env()
            )
            logger.info(
                "Search index runtime started (fts_available=%s)",
                capabilities.get("fts_available"),
            )
            return self._engine

    async def shutdown(self) -> None:
        async with self._start_lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            await engine.close()


runtime_state = RuntimeState()
