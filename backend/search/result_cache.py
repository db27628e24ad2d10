"""
TTL + LRU cache for query results.

Two independent caps apply after every put:
- entry count: the oldest 20% (by last access) are evicted
- total serialized size: the largest entries go until the total is back
  under 80% of the cap
"""

import copy
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "search"
ANY_PROJECT = "*"


def _json_default(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _key_default(value: Any) -> Any:
    # Relative windows ("last week") are rebuilt from now on every request.
    if isinstance(value, datetime):
        return value.replace(second=0, microsecond=0).isoformat()
    return _json_default(value)


def serialized_size(value: Any) -> int:
    return len(json.dumps(value, default=_json_default, ensure_ascii=False).encode("utf-8"))


@dataclass
class CacheEntry:
    value: Any
    size: int
    touched_at: float
    expires_at: float
    project: Optional[str] = None
    record_ids: FrozenSet[str] = field(default_factory=frozenset)


class ResultCache:
    def __init__(
        self,
        max_entries: int = 500,
        max_bytes: int = 50 * 1024 * 1024,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(1, int(max_entries))
        self.max_bytes = max(1, int(max_bytes))
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._total_bytes = 0
        self.hits = 0
        self.misses = 0
        self.generation = 0

    @staticmethod
    def make_key(query: str, options: Any = None) -> str:
        """Key from the normalized query text and the serialized options."""
        normalized = " ".join((query or "").lower().split())
        project = getattr(options, "project_filter", None)
        payload = json.dumps(
            {"query": normalized, "options": options},
            default=_key_default,
            sort_keys=True,
            ensure_ascii=False,
        )
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        scope = project.strip().lower() if project else ANY_PROJECT
        return f"{KEY_PREFIX}:{scope}:{digest}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self._clock()

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        now = self._clock()
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= now:
            self._remove(key)
            self.misses += 1
            return None
        entry.touched_at = now
        self.hits += 1
        return copy.deepcopy(entry.value)

    def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        project: Optional[str] = None,
        record_ids: Iterable[str] = (),
    ) -> None:
        now = self._clock()
        if key in self._entries:
            self._remove(key)
        entry = CacheEntry(
            value=copy.deepcopy(value),
            size=serialized_size(value),
            touched_at=now,
            expires_at=now + (self.default_ttl if ttl is None else float(ttl)),
            project=project.strip().lower() if project else None,
            record_ids=frozenset(record_ids),
        )
        self._entries[key] = entry
        self._total_bytes += entry.size
        self._enforce_limits()

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size

    def _enforce_limits(self) -> None:
        if len(self._entries) > self.max_entries:
            count = max(1, int(len(self._entries) * 0.2))
            oldest = sorted(self._entries, key=lambda k: self._entries[k].touched_at)
            for key in oldest[:count]:
                self._remove(key)
            logger.debug("Result cache evicted %d oldest entries", count)

        if self._total_bytes > self.max_bytes:
            target = self.max_bytes * 0.8
            largest = sorted(
                self._entries, key=lambda k: self._entries[k].size, reverse=True
            )
            evicted = 0
            for key in largest:
                if self._total_bytes <= target:
                    break
                self._remove(key)
                evicted += 1
            logger.debug("Result cache evicted %d largest entries", evicted)

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key containing `pattern`."""
        self.generation += 1
        keys = [key for key in self._entries if pattern in key]
        for key in keys:
            self._remove(key)
        return len(keys)

    def invalidate_for_record(
        self, record_id: str, projects: Iterable[Optional[str]] = ()
    ) -> int:
        """
        Drop entries a write to `record_id` can affect: unscoped entries,
        entries scoped to any of `projects`, and entries containing the record.
        """
        self.generation += 1
        scopes = {project.strip().lower() for project in projects if project}
        keys = [
            key
            for key, entry in self._entries.items()
            if entry.project is None
            or entry.project in scopes
            or record_id in entry.record_ids
        ]
        for key in keys:
            self._remove(key)
        return len(keys)

    def clear(self) -> int:
        self.generation += 1
        count = len(self._entries)
        self._entries.clear()
        self._total_bytes = 0
        return count

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "total_bytes": self._total_bytes,
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }

    def keys(self) -> List[str]:
        return list(self._entries)
