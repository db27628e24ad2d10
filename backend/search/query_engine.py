"""
Query engine: retrieval path selection, candidate filtering, score fusion,
sorting and pagination.

Keyword-path scores and full-text rank scores live on different scales and
are never compared with each other. Full-text ranks are only blended with
importance when the caller supplies `importance_weight`.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.record_store import row_to_record
from db.sqlite_client import SQLiteClient, WorkMemory

from .errors import ValidationError
from .keyword_index import InvertedIndexStore
from .keywords import (
    build_match_expression,
    combined_relevance_tier,
    combined_score,
    extract_context,
    extract_keywords,
    find_matched_keywords,
    full_text_relevance_tier,
    highlight_matches,
    keyword_match_score,
    keyword_relevance_tier,
)
from .models import QueryResult, Record
from .options import (
    FullTextRetrieval,
    KeywordRetrieval,
    RetrievalStrategy,
    SearchOptions,
    SortBy,
)
from .settings import IndexSettings
from .shadow_index import FullTextShadowIndex

logger = logging.getLogger(__name__)

_ID_CHUNK = 500
RELATED_QUERY_KEYWORDS = 5
RELATED_LIMIT = 10


def _require_query(query: str) -> str:
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("query must be a non-empty string", field="query")
    return query.strip()


def _sort_key(result: QueryResult, sort_by: SortBy):
    if sort_by == SortBy.DATE:
        return result.record.created_at
    if sort_by == SortBy.ACCESS_COUNT:
        return result.record.access_count
    if sort_by == SortBy.IMPORTANCE:
        return result.record.importance_score
    return (result.fused_score, result.rank_score)


class QueryEngine:
    def __init__(self, client: SQLiteClient, settings: Optional[IndexSettings] = None):
        self.client = client
        self.settings = settings or IndexSettings()

    def select_strategy(self, query: str, options: SearchOptions) -> RetrievalStrategy:
        """Pick the retrieval path once for the whole call."""
        use_full_text = True if options.use_full_text is None else options.use_full_text
        if use_full_text:
            if not self.client.fts_available:
                logger.info("Full-text retrieval unavailable; using keyword retrieval")
            else:
                expression = build_match_expression(query)
                if expression:
                    return FullTextRetrieval(match_expression=expression)
        return KeywordRetrieval(fuzzy=options.fuzzy_match)

    async def search(
        self, query: str, options: Optional[SearchOptions] = None
    ) -> List[QueryResult]:
        options = options or SearchOptions()
        query = _require_query(query)
        options.validate()

        strategy = self.select_strategy(query, options)
        query_keywords = extract_keywords(query, self.settings.query_keyword_limit)

        async with self.client.session() as session:
            ranks: Dict[str, float] = {}
            if isinstance(strategy, FullTextRetrieval):
                ranked = await FullTextShadowIndex(self.client, session).query(
                    strategy.match_expression
                )
                if ranked is None:
                    logger.info("Full-text query degraded to keyword retrieval")
                    strategy = KeywordRetrieval(fuzzy=options.fuzzy_match)
                else:
                    ranks = dict(ranked)

            if isinstance(strategy, KeywordRetrieval):
                candidate_ids = await InvertedIndexStore(session).candidates(
                    query_keywords, fuzzy=strategy.fuzzy
                )
            else:
                candidate_ids = list(ranks)

            records = await self._fetch_candidates(session, candidate_ids, options)

        if isinstance(strategy, FullTextRetrieval):
            results = self._score_full_text(records, ranks, query_keywords, options)
        else:
            results = self._score_keywords(records, query_keywords, options, strategy)

        sort_by = SortBy(options.sort_by)
        # Two stable passes: newest update first, then the requested key.
        results.sort(key=lambda item: item.record.updated_at, reverse=True)
        results.sort(key=lambda item: _sort_key(item, sort_by), reverse=True)

        page = results[options.offset : options.offset + options.limit]
        context_length = options.context_length or self.settings.context_length
        for result in page:
            self._decorate(result, context_length)
        return page

    async def _fetch_candidates(
        self, session: AsyncSession, record_ids: Sequence[str], options: SearchOptions
    ) -> List[Record]:
        records: List[Record] = []
        ids = list(record_ids)
        for start in range(0, len(ids), _ID_CHUNK):
            stmt = select(WorkMemory).where(
                WorkMemory.id.in_(ids[start : start + _ID_CHUNK]),
                WorkMemory.is_archived == False,
            )
            if options.project_filter:
                stmt = stmt.where(
                    func.lower(WorkMemory.project)
                    == options.project_filter.strip().lower()
                )
            bounds = options.importance_filter
            if bounds is not None and bounds.min_score is not None:
                stmt = stmt.where(WorkMemory.importance_score >= bounds.min_score)
            if bounds is not None and bounds.max_score is not None:
                stmt = stmt.where(WorkMemory.importance_score <= bounds.max_score)
            window = options.date_range
            if window is not None and window.start is not None:
                stmt = stmt.where(WorkMemory.created_at >= window.start)
            if window is not None and window.end is not None:
                stmt = stmt.where(WorkMemory.created_at <= window.end)
            if options.session_filter:
                stmt = stmt.where(WorkMemory.session_id == options.session_filter)
            result = await session.execute(stmt)
            records.extend(row_to_record(row) for row in result.scalars().all())
        return records

    def _score_keywords(
        self,
        records: Sequence[Record],
        query_keywords: Sequence[str],
        options: SearchOptions,
        strategy: KeywordRetrieval,
    ) -> List[QueryResult]:
        results: List[QueryResult] = []
        for record in records:
            content_keywords = extract_keywords(
                record.content, self.settings.content_keyword_limit
            )
            score = keyword_match_score(
                query_keywords,
                content_keywords,
                record.tags,
                record.project,
                options.project_filter,
            )
            if score < options.min_score:
                continue
            results.append(
                QueryResult(
                    record=record,
                    fused_score=float(score),
                    relevance_tier=keyword_relevance_tier(score),
                    matched_keywords=find_matched_keywords(
                        query_keywords, content_keywords, record.tags
                    ),
                    highlighted_excerpt="",
                    rank_score=float(score),
                    retrieval=strategy.name,
                )
            )
        return results

    def _score_full_text(
        self,
        records: Sequence[Record],
        ranks: Dict[str, float],
        query_keywords: Sequence[str],
        options: SearchOptions,
    ) -> List[QueryResult]:
        if not records:
            return []
        best = max(ranks.get(record.id, 0.0) for record in records)
        weight = options.importance_weight
        results: List[QueryResult] = []
        for record in records:
            rank = ranks.get(record.id, 0.0)
            if weight is not None:
                fused = combined_score(record.importance_score, float(weight))
                tier = combined_relevance_tier(fused)
            else:
                fused = rank
                normalized = rank / best if best > 0 else (1.0 if rank == best else 0.0)
                tier = full_text_relevance_tier(normalized)
            content_keywords = extract_keywords(
                record.content, self.settings.content_keyword_limit
            )
            results.append(
                QueryResult(
                    record=record,
                    fused_score=fused,
                    relevance_tier=tier,
                    matched_keywords=find_matched_keywords(
                        query_keywords, content_keywords, record.tags
                    ),
                    highlighted_excerpt="",
                    rank_score=rank,
                    retrieval="full_text",
                )
            )
        return results

    @staticmethod
    def _decorate(result: QueryResult, context_length: int) -> None:
        content = result.record.content
        result.context = extract_context(content, result.matched_keywords, context_length)
        result.highlighted_excerpt = highlight_matches(
            result.context, result.matched_keywords
        )
        result.highlighted_content = highlight_matches(content, result.matched_keywords)

    async def related_keywords(self, query: str) -> List[str]:
        """Keywords that co-occur with the query's keywords, most shared first."""
        keywords = extract_keywords(_require_query(query), RELATED_QUERY_KEYWORDS)
        if not keywords:
            return []
        async with self.client.session() as session:
            pairs = await InvertedIndexStore(session).co_occurring(
                keywords, keywords, limit=RELATED_LIMIT
            )
        return [keyword for keyword, _ in pairs]

    async def search_suggestions(self, prefix: str, limit: int = 10) -> List[str]:
        async with self.client.session() as session:
            return await InvertedIndexStore(session).suggestions(prefix or "", limit)

    async def index_statistics(self) -> Dict[str, Any]:
        async with self.client.session() as session:
            return await InvertedIndexStore(session).statistics()

    async def analyze_query(self, query: str) -> Dict[str, Any]:
        keywords = extract_keywords(_require_query(query), 10)
        if len(keywords) > 5:
            complexity = "complex"
        elif len(keywords) > 2:
            complexity = "medium"
        else:
            complexity = "simple"
        async with self.client.session() as session:
            candidates = await InvertedIndexStore(session).candidates(keywords)
        return {
            "keywords": keywords,
            "estimated_results": len(candidates),
            "complexity": complexity,
            "suggestions": [f"{keyword}*" for keyword in keywords],
        }
