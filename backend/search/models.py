"""
Value types shared by the index components.

Records are owned by the canonical store; everything else here is produced
by the engine and is never persisted as-is.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, PartialMigrationError, ValidationError

MAX_CONTENT_CHARS = 10_000
MAX_TAGS = 20
DEFAULT_IMPORTANCE = 50


def utc_now_naive() -> datetime:
    """Naive UTC datetime, matching how the store persists timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeywordSource(str, Enum):
    CONTENT = "content"
    TAGS = "tags"
    PROJECT = "project"


@dataclass
class Record:
    """A memory row as seen by the index."""

    id: str
    content: str
    tags: List[str] = field(default_factory=list)
    project: Optional[str] = None
    importance_score: int = DEFAULT_IMPORTANCE
    created_at: datetime = field(default_factory=utc_now_naive)
    updated_at: datetime = field(default_factory=utc_now_naive)
    archived: bool = False
    access_count: int = 0
    created_by: str = "unknown"
    session_id: Optional[str] = None

    def validate(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValidationError("record id must be a non-empty string", field="id")
        if len(self.content or "") > MAX_CONTENT_CHARS:
            raise ValidationError(
                f"content exceeds {MAX_CONTENT_CHARS} characters", field="content"
            )
        if len(self.tags or []) > MAX_TAGS:
            raise ValidationError(f"at most {MAX_TAGS} tags are allowed", field="tags")
        try:
            score = int(self.importance_score)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "importance_score must be an integer", field="importance_score"
            ) from exc
        if not 0 <= score <= 100:
            raise ValidationError(
                "importance_score must be within 0-100", field="importance_score"
            )


@dataclass(frozen=True)
class KeywordEntry:
    record_id: str
    keyword: str
    source: KeywordSource
    weight: float


def importance_level(score: int) -> str:
    if score >= 90:
        return "critical"
    if score >= 70:
        return "high"
    if score >= 30:
        return "medium"
    if score >= 10:
        return "low"
    return "minimal"


@dataclass
class QueryResult:
    record: Record
    fused_score: float
    relevance_tier: str
    matched_keywords: List[str]
    highlighted_excerpt: str
    context: str = ""
    highlighted_content: str = ""
    rank_score: float = 0.0
    retrieval: str = "keyword"

    @property
    def importance_level(self) -> str:
        return importance_level(self.record.importance_score)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["importance_level"] = self.importance_level
        return payload


@dataclass
class IndexHealthReport:
    health_score: int
    keyword_count: int
    total_references: int
    orphan_count: int
    duplicate_count: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    referenced_records: int = 0
    active_records: int = 0
    coverage: float = 0.0
    keyword_density: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizeResult:
    orphans_removed: int = 0
    duplicates_removed: int = 0
    keywords_merged: int = 0
    low_frequency_removed: int = 0
    analyzed: bool = False
    processing_time_ms: float = 0.0
    before: Optional[IndexHealthReport] = None
    after: Optional[IndexHealthReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RebuildResult:
    records_indexed: int
    keyword_entries: int
    shadow_documents: int
    reason: str
    finished_at: str
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepairResult:
    actions: List[str] = field(default_factory=list)
    optimize_attempts: int = 0
    rebuilt: bool = False
    health: Optional[IndexHealthReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReindexResult:
    record_id: str
    keyword_entries: int = 0
    shadow_synced: bool = False
    error: Optional[NotFoundError] = None

    @property
    def found(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "keyword_entries": self.keyword_entries,
            "shadow_synced": self.shadow_synced,
            "found": self.found,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class MigrationResult:
    success: bool
    migrated_keywords: int = 0
    inserted_entries: int = 0
    skipped_missing_records: int = 0
    skipped_existing: int = 0
    errors: List[str] = field(default_factory=list)
    backup_path: Optional[str] = None

    @property
    def error(self) -> Optional[PartialMigrationError]:
        if self.success and self.errors:
            return PartialMigrationError(self.errors, self.migrated_keywords)
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["partial"] = self.error is not None
        return payload


@dataclass
class VerificationReport:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    legacy_references: int = 0
    indexed_references: int = 0
    duplicate_count: int = 0
    orphan_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
