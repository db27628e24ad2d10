"""
Inverted keyword index over the `search_keywords` table.

An InvertedIndexStore is bound to one AsyncSession so callers decide the
transaction boundary (a record hook, an optimize pass, a migration).
Connection failures propagate out of the owning `SQLiteClient.session()`
as StoreUnavailableError; nothing here turns them into empty results.
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .keywords import normalize_query
from .models import KeywordEntry, KeywordSource, utc_now_naive

_INSERT_IF_ABSENT = text(
    "INSERT INTO search_keywords(record_id, keyword, source, weight) "
    "SELECT :record_id, :keyword, :source, :weight "
    "WHERE NOT EXISTS ("
    "SELECT 1 FROM search_keywords "
    "WHERE record_id = :record_id AND keyword = :keyword"
    ")"
)

_CO_OCCURRING = text(
    "SELECT other.keyword AS keyword, COUNT(DISTINCT other.record_id) AS co_count "
    "FROM search_keywords AS seed "
    "JOIN search_keywords AS other ON other.record_id = seed.record_id "
    "JOIN work_memories AS m ON m.id = other.record_id AND m.is_archived = 0 "
    "WHERE seed.keyword IN :keywords "
    "AND other.keyword NOT IN :exclude "
    "GROUP BY other.keyword "
    "ORDER BY co_count DESC, other.keyword ASC "
    "LIMIT :limit"
).bindparams(
    bindparam("keywords", expanding=True),
    bindparam("exclude", expanding=True),
)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class InvertedIndexStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_keyword(
        self, record_id: str, keyword: str, source: KeywordSource, weight: float
    ) -> bool:
        """
        Insert (record_id, keyword) unless the pair already exists.

        An existing entry keeps its original source and weight; refreshing
        them requires remove_for_record first.
        """
        result = await self.session.execute(
            _INSERT_IF_ABSENT,
            {
                "record_id": record_id,
                "keyword": keyword,
                "source": KeywordSource(source).value,
                "weight": float(weight),
            },
        )
        return (result.rowcount or 0) > 0

    async def add_entries(self, entries: Iterable[KeywordEntry]) -> int:
        inserted = 0
        for entry in entries:
            if await self.upsert_keyword(
                entry.record_id, entry.keyword, entry.source, entry.weight
            ):
                inserted += 1
        return inserted

    async def replace_for_record(
        self, record_id: str, entries: Sequence[KeywordEntry]
    ) -> int:
        await self.remove_for_record(record_id)
        return await self.add_entries(entries)

    async def remove_for_record(self, record_id: str) -> int:
        result = await self.session.execute(
            text("DELETE FROM search_keywords WHERE record_id = :record_id"),
            {"record_id": record_id},
        )
        return result.rowcount or 0

    async def has_entry(self, record_id: str, keyword: str) -> bool:
        result = await self.session.execute(
            text(
                "SELECT 1 FROM search_keywords "
                "WHERE record_id = :record_id AND keyword = :keyword LIMIT 1"
            ),
            {"record_id": record_id, "keyword": keyword},
        )
        return result.first() is not None

    async def lookup_exact(self, keyword: str) -> List[str]:
        result = await self.session.execute(
            text(
                "SELECT DISTINCT record_id FROM search_keywords "
                "WHERE keyword = :keyword ORDER BY record_id"
            ),
            {"keyword": keyword},
        )
        return [row[0] for row in result.all()]

    async def lookup_fuzzy(self, pattern: str) -> List[str]:
        """Record ids with a keyword containing `pattern` as a substring."""
        if not pattern:
            return []
        result = await self.session.execute(
            text(
                "SELECT DISTINCT record_id FROM search_keywords "
                "WHERE keyword LIKE :pattern ESCAPE '\\' ORDER BY record_id"
            ),
            {"pattern": f"%{escape_like(pattern)}%"},
        )
        return [row[0] for row in result.all()]

    async def candidates(self, keywords: Sequence[str], fuzzy: bool = False) -> List[str]:
        seen: Dict[str, None] = {}
        for keyword in keywords:
            for record_id in await self.lookup_exact(keyword):
                seen.setdefault(record_id)
            if fuzzy:
                for record_id in await self.lookup_fuzzy(keyword):
                    seen.setdefault(record_id)
        return list(seen)

    async def co_occurring(
        self, keywords: Sequence[str], exclude: Sequence[str], limit: int = 10
    ) -> List[Tuple[str, int]]:
        """
        Keywords sharing a live record with any of `keywords`, most shared
        records first. `exclude` and the input keywords are never returned.
        """
        seeds = [keyword for keyword in keywords if keyword]
        if not seeds or limit <= 0:
            return []
        excluded = list(dict.fromkeys(list(exclude) + seeds))
        result = await self.session.execute(
            _CO_OCCURRING,
            {"keywords": seeds, "exclude": excluded, "limit": int(limit)},
        )
        return [(row.keyword, int(row.co_count)) for row in result.all()]

    async def suggestions(self, prefix: str, limit: int = 10) -> List[str]:
        normalized = normalize_query(prefix)
        if len(normalized) < 2:
            return []
        result = await self.session.execute(
            text(
                "SELECT keyword, COUNT(DISTINCT record_id) AS refs "
                "FROM search_keywords "
                "WHERE keyword LIKE :pattern ESCAPE '\\' "
                "GROUP BY keyword "
                "ORDER BY refs DESC, keyword ASC "
                "LIMIT :limit"
            ),
            {"pattern": f"%{escape_like(normalized)}%", "limit": int(limit)},
        )
        return [row.keyword for row in result.all()]

    async def statistics(self, top: int = 10, recent_days: int = 7) -> Dict[str, Any]:
        totals = (
            await self.session.execute(
                text(
                    "SELECT COUNT(DISTINCT keyword) AS keywords, COUNT(*) AS refs "
                    "FROM search_keywords"
                )
            )
        ).one()
        keyword_count = int(totals.keywords or 0)
        total_references = int(totals.refs or 0)

        popular = await self.session.execute(
            text(
                "SELECT keyword, COUNT(DISTINCT record_id) AS refs "
                "FROM search_keywords "
                "GROUP BY keyword "
                "ORDER BY refs DESC, keyword ASC "
                "LIMIT :limit"
            ),
            {"limit": int(top)},
        )
        recent = await self.session.execute(
            text(
                "SELECT sk.keyword AS keyword, COUNT(DISTINCT sk.record_id) AS refs "
                "FROM search_keywords AS sk "
                "JOIN work_memories AS m ON m.id = sk.record_id "
                "WHERE m.created_at >= :since AND m.is_archived = 0 "
                "GROUP BY sk.keyword "
                "ORDER BY refs DESC, sk.keyword ASC "
                "LIMIT :limit"
            ),
            {
                "since": utc_now_naive() - timedelta(days=recent_days),
                "limit": int(top),
            },
        )

        return {
            "keyword_count": keyword_count,
            "total_references": total_references,
            "average_references": (
                round(total_references / keyword_count, 2) if keyword_count else 0.0
            ),
            "popular_keywords": [
                {"keyword": row.keyword, "references": int(row.refs)}
                for row in popular.all()
            ],
            "recent_keywords": [
                {"keyword": row.keyword, "references": int(row.refs)}
                for row in recent.all()
            ],
        }
