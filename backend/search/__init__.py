"""Hybrid keyword/full-text search index for memory records."""

from .errors import (
    MaintenanceError,
    NotFoundError,
    PartialMigrationError,
    SearchIndexError,
    StoreUnavailableError,
    ValidationError,
)
from .models import KeywordEntry, KeywordSource, QueryResult, Record
from .options import (
    DateRange,
    ImportanceRange,
    OptimizeOptions,
    SearchOptions,
    SortBy,
)
from .settings import IndexSettings

__all__ = [
    "DateRange",
    "ImportanceRange",
    "IndexSettings",
    "KeywordEntry",
    "KeywordSource",
    "MaintenanceError",
    "NotFoundError",
    "OptimizeOptions",
    "PartialMigrationError",
    "QueryResult",
    "Record",
    "SearchIndexError",
    "SearchOptions",
    "SortBy",
    "StoreUnavailableError",
    "ValidationError",
]
