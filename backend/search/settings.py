"""Environment-driven tunables for the search index engine."""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


@dataclass(frozen=True)
class IndexSettings:
    content_keyword_limit: int = 50
    query_keyword_limit: int = 20
    context_length: int = 100

    cache_enabled: bool = True
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 500
    cache_max_bytes: int = 50 * 1024 * 1024

    # Health-score penalties are tunables, not contracts.
    orphan_threshold_pct: float = 0.0
    orphan_penalty_per_pct: float = 1.0
    duplicate_penalty: float = 1.0
    duplicate_penalty_cap: float = 15.0
    coverage_target_pct: float = 90.0
    min_keyword_density: float = 0.0
    density_penalty: float = 10.0
    healthy_score: int = 80

    low_frequency_min_records: int = 2

    @classmethod
    def from_env(cls) -> "IndexSettings":
        return cls(
            content_keyword_limit=_env_int("SEARCH_CONTENT_KEYWORD_LIMIT", 50, minimum=1),
            query_keyword_limit=_env_int("SEARCH_QUERY_KEYWORD_LIMIT", 20, minimum=1),
            context_length=_env_int("SEARCH_CONTEXT_LENGTH", 100, minimum=10),
            cache_enabled=_env_bool("SEARCH_CACHE_ENABLED", True),
            cache_ttl_seconds=_env_float("SEARCH_CACHE_TTL_SECONDS", 300.0, minimum=1.0),
            cache_max_entries=_env_int("SEARCH_CACHE_MAX_ENTRIES", 500, minimum=5),
            cache_max_bytes=_env_int(
                "SEARCH_CACHE_MAX_BYTES", 50 * 1024 * 1024, minimum=1024
            ),
            orphan_threshold_pct=min(
                100.0, _env_float("INDEX_HEALTH_ORPHAN_THRESHOLD_PCT", 0.0)
            ),
            orphan_penalty_per_pct=_env_float("INDEX_HEALTH_ORPHAN_PENALTY", 1.0),
            duplicate_penalty=_env_float("INDEX_HEALTH_DUPLICATE_PENALTY", 1.0),
            duplicate_penalty_cap=_env_float("INDEX_HEALTH_DUPLICATE_PENALTY_CAP", 15.0),
            coverage_target_pct=min(
                100.0, _env_float("INDEX_HEALTH_COVERAGE_TARGET_PCT", 90.0)
            ),
            min_keyword_density=_env_float("INDEX_HEALTH_MIN_DENSITY", 0.0),
            density_penalty=_env_float("INDEX_HEALTH_DENSITY_PENALTY", 10.0),
            healthy_score=min(100, _env_int("INDEX_HEALTHY_SCORE", 80)),
            low_frequency_min_records=_env_int(
                "INDEX_LOW_FREQUENCY_MIN_RECORDS", 2, minimum=1
            ),
        )
