"""
Error taxonomy for the search index engine.

- ValidationError: malformed input, raised before any I/O.
- NotFoundError: a referenced record is missing. Returned inside result
  objects, never raised as fatal.
- StoreUnavailableError: the backing store failed or is closed. Always
  propagated so "no match" and "index down" stay distinguishable.
- PartialMigrationError: attached to a legacy migration that committed
  only part of the document.
- MaintenanceError: optimize/rebuild failed and was rolled back.
"""

from typing import List, Optional


class SearchIndexError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(SearchIndexError, ValueError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(SearchIndexError):
    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class StoreUnavailableError(SearchIndexError):
    pass


class PartialMigrationError(SearchIndexError):
    def __init__(self, errors: List[str], migrated_keywords: int):
        super().__init__(
            f"Legacy migration committed {migrated_keywords} keyword(s) "
            f"with {len(errors)} failure(s)"
        )
        self.errors = list(errors)
        self.migrated_keywords = migrated_keywords


class MaintenanceError(SearchIndexError):
    def __init__(self, operation: str, step: str, cause: BaseException):
        super().__init__(f"{operation} failed during '{step}': {cause}")
        self.operation = operation
        self.step = step
