"""
Keyword extraction and keyword-path scoring.

Everything in this module is pure: identical input always yields identical
output, which the dedup logic and the tests rely on.
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from .models import KeywordEntry, KeywordSource, Record

# ASCII word characters plus Hangul jamo and syllables; everything else is
# treated as a separator.
_NON_KEYWORD_CHARS = re.compile(r"[^a-z0-9_\sㄱ-ㅎㅏ-ㅣ가-힣]")
_WHITESPACE = re.compile(r"\s+")
_QUOTED_PHRASE = re.compile(r'"([^"]+)"')

STOP_WORDS = frozenset(
    {
        # English
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "as", "is", "was", "are", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "this", "that", "these",
        "those", "i", "you", "he", "she", "it", "we", "they", "me", "him",
        "her", "us", "them", "my", "your", "his", "its", "our", "their",
        # Korean
        "그", "이", "저", "것", "들", "와", "과", "를", "을", "가", "에", "의",
        "로", "으로", "에서", "부터", "까지", "보다", "처럼", "같이", "함께",
        "하고", "하지만", "그러나", "그리고", "또는", "또한", "그래서", "따라서",
        "그런데", "만약", "만일", "수", "때", "동안", "중", "안", "밖", "위",
        "아래", "앞", "뒤", "좌", "우", "다른", "같은", "새로운",
    }
)

EXACT_MATCH_SCORE = 10
PARTIAL_MATCH_SCORE = 5
TAG_MATCH_SCORE = 3
PROJECT_MATCH_SCORE = 5

TAG_WEIGHT = 2.0
PROJECT_WEIGHT = 1.5
CONTENT_WEIGHT = 1.0


def is_stop_word(word: str) -> bool:
    return word in STOP_WORDS


def normalize_query(query: str) -> str:
    lowered = (query or "").lower().strip()
    return _WHITESPACE.sub(" ", _NON_KEYWORD_CHARS.sub(" ", lowered)).strip()


def normalize_keyword(keyword: str) -> str:
    """Case and whitespace normalization used when merging similar keywords."""
    return _WHITESPACE.sub(" ", keyword or "").strip().lower()


def extract_keywords(text: str, max_keywords: int = 10) -> List[str]:
    """
    Return the most frequent non-stop-word tokens of `text`.

    Ties keep first-occurrence order (the sort is stable over an
    insertion-ordered dict).
    """
    if not text or max_keywords <= 0:
        return []
    normalized = _NON_KEYWORD_CHARS.sub(" ", text.lower())
    frequencies: Dict[str, int] = {}
    for word in normalized.split():
        if len(word) < 2 or is_stop_word(word):
            continue
        frequencies[word] = frequencies.get(word, 0) + 1
    ranked = sorted(frequencies.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:max_keywords]]


def build_keyword_entries(record: Record, content_limit: int = 50) -> List[KeywordEntry]:
    """
    Derive the inverted-index entries of one record.

    Tags win over project, project wins over content: the first source that
    yields a keyword owns it.
    """
    entries: Dict[str, KeywordEntry] = {}

    def add(keyword: str, source: KeywordSource, weight: float) -> None:
        value = normalize_keyword(keyword)
        if not value or value in entries:
            return
        entries[value] = KeywordEntry(
            record_id=record.id, keyword=value, source=source, weight=weight
        )

    for tag in record.tags or []:
        add(tag, KeywordSource.TAGS, TAG_WEIGHT)
    if record.project:
        add(record.project, KeywordSource.PROJECT, PROJECT_WEIGHT)
    for word in extract_keywords(record.content, content_limit):
        add(word, KeywordSource.CONTENT, CONTENT_WEIGHT)
    return list(entries.values())


def _is_partial_match(query_keyword: str, words: Iterable[str]) -> bool:
    return any(query_keyword in word or word in query_keyword for word in words)


def keyword_match_score(
    query_keywords: Sequence[str],
    content_keywords: Sequence[str],
    tags: Sequence[str],
    project: Optional[str] = None,
    project_filter: Optional[str] = None,
) -> int:
    """
    Keyword-path score.

    Exact and partial hits are counted independently; a keyword equal to a
    content keyword is also a substring of it, so one exact hit is worth
    EXACT_MATCH_SCORE + PARTIAL_MATCH_SCORE.
    """
    content_set = set(content_keywords)
    score = 0
    for query_keyword in query_keywords:
        if query_keyword in content_set:
            score += EXACT_MATCH_SCORE
        if _is_partial_match(query_keyword, content_keywords):
            score += PARTIAL_MATCH_SCORE

    query_set = set(query_keywords)
    for tag in tags or []:
        if normalize_keyword(tag) in query_set:
            score += TAG_MATCH_SCORE

    if (
        project
        and project_filter
        and project.strip().lower() == project_filter.strip().lower()
    ):
        score += PROJECT_MATCH_SCORE
    return score


def keyword_relevance_tier(score: float) -> str:
    if score >= 15:
        return "high"
    if score >= 5:
        return "medium"
    return "low"


def full_text_relevance_tier(normalized_rank: float) -> str:
    if normalized_rank >= 0.75:
        return "high"
    if normalized_rank >= 0.40:
        return "medium"
    return "low"


def combined_relevance_tier(combined_score: float) -> str:
    if combined_score >= 70:
        return "high"
    if combined_score >= 40:
        return "medium"
    return "low"


def combined_score(importance_score: float, importance_weight: float) -> float:
    """Blend a fixed full-relevance baseline with business importance."""
    return 100.0 * (1.0 - importance_weight) + float(importance_score) * importance_weight


def find_matched_keywords(
    query_keywords: Sequence[str], content_keywords: Sequence[str], tags: Sequence[str]
) -> List[str]:
    record_keywords = list(content_keywords) + [normalize_keyword(tag) for tag in tags or []]
    return [
        keyword
        for keyword in query_keywords
        if _is_partial_match(keyword, record_keywords)
    ]


def extract_context(
    content: str, matched_keywords: Sequence[str], context_length: int = 100
) -> str:
    text = content or ""
    fallback = text[:context_length] + ("…" if len(text) > context_length else "")
    if not matched_keywords:
        return fallback

    position = text.lower().find(matched_keywords[0].lower())
    if position < 0:
        return fallback

    start = max(0, position - context_length // 2)
    end = min(len(text), start + context_length)
    excerpt = text[start:end]
    if start > 0:
        excerpt = "…" + excerpt
    if end < len(text):
        excerpt = excerpt + "…"
    return excerpt


def highlight_matches(text: str, matched_keywords: Sequence[str]) -> str:
    """Return a copy of `text` with every keyword occurrence wrapped in **."""
    keywords = sorted(
        {keyword for keyword in matched_keywords if keyword}, key=len, reverse=True
    )
    if not text or not keywords:
        return text or ""
    pattern = re.compile(
        "|".join(re.escape(keyword) for keyword in keywords), re.IGNORECASE
    )
    return pattern.sub(lambda match: f"**{match.group(0)}**", text)


def build_match_expression(query: str) -> str:
    """
    Translate free text into an FTS5 MATCH expression.

    Quoted segments stay phrases; remaining tokens become quoted terms that
    are implicitly AND-ed. Returns "" when nothing searchable remains.
    """
    parts: List[str] = []
    for phrase in _QUOTED_PHRASE.findall(query or ""):
        tokens = normalize_query(phrase).split()
        if tokens:
            parts.append('"' + " ".join(tokens) + '"')

    remainder = _QUOTED_PHRASE.sub(" ", query or "")
    tokens = normalize_query(remainder).split()
    meaningful = [token for token in tokens if not is_stop_word(token)]
    for token in list(dict.fromkeys(meaningful or tokens)):
        parts.append(f'"{token}"')
    return " ".join(parts)
