from .maintenance import router as maintenance_router
from .search import router as search_router

__all__ = ["maintenance_router", "search_router"]
