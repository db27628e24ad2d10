"""
Typed option objects for queries and maintenance, plus the retrieval
strategy union the query engine dispatches on.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from .errors import ValidationError
from .models import utc_now_naive

MAX_LIMIT = 100

_TIME_RANGE_DAYS = {
    "today": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    ACCESS_COUNT = "access_count"
    IMPORTANCE = "importance"


@dataclass(frozen=True)
class ImportanceRange:
    min_score: Optional[int] = None
    max_score: Optional[int] = None


@dataclass(frozen=True)
class DateRange:
    """Inclusive bounds over a record's created_at (naive UTC)."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_time_range(
        cls, time_range: str, now: Optional[datetime] = None
    ) -> Optional["DateRange"]:
        value = (time_range or "all").strip().lower()
        if value == "all":
            return None
        days = _TIME_RANGE_DAYS.get(value)
        if days is None:
            raise ValidationError(
                f"time_range must be one of: all, {', '.join(_TIME_RANGE_DAYS)}",
                field="time_range",
            )
        reference = now or utc_now_naive()
        return cls(start=reference - timedelta(days=days), end=None)


@dataclass(frozen=True)
class SearchOptions:
    use_full_text: Optional[bool] = None
    project_filter: Optional[str] = None
    importance_filter: Optional[ImportanceRange] = None
    date_range: Optional[DateRange] = None
    session_filter: Optional[str] = None
    fuzzy_match: bool = False
    sort_by: SortBy = SortBy.RELEVANCE
    min_score: float = 1.0
    limit: int = 20
    offset: int = 0
    importance_weight: Optional[float] = None
    context_length: Optional[int] = None

    def validate(self) -> None:
        if self.importance_weight is not None:
            try:
                weight = float(self.importance_weight)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    "importance_weight must be a number", field="importance_weight"
                ) from exc
            if not 0.0 <= weight <= 1.0:
                raise ValidationError(
                    "importance_weight must be within [0, 1]",
                    field="importance_weight",
                )
        if not isinstance(self.limit, int) or not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationError(
                f"limit must be an integer within 1-{MAX_LIMIT}", field="limit"
            )
        if not isinstance(self.offset, int) or self.offset < 0:
            raise ValidationError("offset must be a non-negative integer", field="offset")
        if self.min_score < 0:
            raise ValidationError("min_score must not be negative", field="min_score")
        try:
            SortBy(self.sort_by)
        except ValueError as exc:
            raise ValidationError(
                f"sort_by must be one of: {', '.join(s.value for s in SortBy)}",
                field="sort_by",
            ) from exc
        if self.context_length is not None and self.context_length < 10:
            raise ValidationError(
                "context_length must be at least 10", field="context_length"
            )

        bounds = self.importance_filter
        if bounds is not None:
            for value in (bounds.min_score, bounds.max_score):
                if value is not None and not 0 <= value <= 100:
                    raise ValidationError(
                        "importance bounds must be within 0-100",
                        field="importance_filter",
                    )
            if (
                bounds.min_score is not None
                and bounds.max_score is not None
                and bounds.min_score > bounds.max_score
            ):
                raise ValidationError(
                    "importance min_score must not exceed max_score",
                    field="importance_filter",
                )

        window = self.date_range
        if window is not None and window.start and window.end and window.start > window.end:
            raise ValidationError(
                "date_range start must not be after end", field="date_range"
            )


@dataclass(frozen=True)
class OptimizeOptions:
    cleanup_orphans: bool = True
    remove_duplicates: bool = True
    merge_similar: bool = True
    remove_low_frequency: bool = False
    analyze: bool = True
    low_frequency_min_records: Optional[int] = None


# Retrieval strategies are chosen once per call.


@dataclass(frozen=True)
class FullTextRetrieval:
    match_expression: str

    @property
    def name(self) -> str:
        return "full_text"


@dataclass(frozen=True)
class KeywordRetrieval:
    fuzzy: bool = False

    @property
    def name(self) -> str:
        return "fuzzy" if self.fuzzy else "keyword"


RetrievalStrategy = Union[FullTextRetrieval, KeywordRetrieval]
