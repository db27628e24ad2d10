from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from runtime_state import runtime_state
from search.engine import SearchIndexEngine
from search.errors import SearchIndexError
from search.options import DateRange, ImportanceRange, SearchOptions

from .errors import to_http_exception

router = APIRouter(prefix="/search", tags=["search"])


def get_engine() -> SearchIndexEngine:
    try:
        return runtime_state.engine
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SearchRequest(BaseModel):
    query: str
    use_full_text: Optional[bool] = None
    project_filter: Optional[str] = None
    importance_min: Optional[int] = None
    importance_max: Optional[int] = None
    time_range: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    session_filter: Optional[str] = None
    fuzzy_match: bool = False
    sort_by: str = "relevance"
    min_score: float = 1.0
    limit: int = Field(default=20)
    offset: int = Field(default=0)
    importance_weight: Optional[float] = None
    context_length: Optional[int] = None

    def to_options(self) -> SearchOptions:
        importance = None
        if self.importance_min is not None or self.importance_max is not None:
            importance = ImportanceRange(self.importance_min, self.importance_max)

        date_range = None
        if self.created_after is not None or self.created_before is not None:
            date_range = DateRange(
                start=_naive_utc(self.created_after), end=_naive_utc(self.created_before)
            )
        elif self.time_range:
            date_range = DateRange.from_time_range(self.time_range)

        return SearchOptions(
            use_full_text=self.use_full_text,
            project_filter=self.project_filter,
            importance_filter=importance,
            date_range=date_range,
            session_filter=self.session_filter,
            fuzzy_match=self.fuzzy_match,
            sort_by=self.sort_by,
            min_score=self.min_score,
            limit=self.limit,
            offset=self.offset,
            importance_weight=self.importance_weight,
            context_length=self.context_length,
        )


@router.post("")
async def search(
    body: SearchRequest, engine: SearchIndexEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        results = await engine.search(body.query, body.to_options())
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
    return {
        "query": body.query,
        "count": len(results),
        "results": [result.to_dict() for result in results],
    }


@router.get("/related")
async def related_keywords(
    query: str = Query(...), engine: SearchIndexEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        keywords = await engine.related_keywords(query)
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
    return {"query": query, "keywords": keywords}


@router.get("/suggestions")
async def search_suggestions(
    prefix: str = Query(default=""), engine: SearchIndexEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        suggestions = await engine.search_suggestions(prefix)
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
    return {"prefix": prefix, "suggestions": suggestions}


@router.get("/analyze")
async def analyze_query(
    query: str = Query(...), engine: SearchIndexEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        return await engine.analyze_query(query)
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
