from fastapi import HTTPException, status

from search.errors import (
    MaintenanceError,
    SearchIndexError,
    StoreUnavailableError,
    ValidationError,
)


def to_http_exception(exc: SearchIndexError) -> HTTPException:
    """Map an engine error onto the HTTP status the routers return."""
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=422,
            detail={"error": "validation_failed", "field": exc.field, "reason": str(exc)},
        )
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "index_store_unavailable", "reason": str(exc)},
        )
    if isinstance(exc, MaintenanceError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "maintenance_failed",
                "operation": exc.operation,
                "step": exc.step,
                "reason": str(exc),
            },
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "search_index_error", "reason": str(exc)},
    )
