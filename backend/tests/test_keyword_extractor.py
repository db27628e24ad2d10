import pytest

from search.keywords import (
    build_keyword_entries,
    build_match_expression,
    combined_relevance_tier,
    combined_score,
    extract_context,
    extract_keywords,
    full_text_relevance_tier,
    highlight_matches,
    keyword_match_score,
    keyword_relevance_tier,
)
from search.models import KeywordSource, Record


def test_extract_keywords_ranks_by_frequency_and_drops_stop_words() -> None:
    keywords = extract_keywords("Deploy the service, then deploy again!")
    assert keywords == ["deploy", "service", "then", "again"]


def test_extract_keywords_ties_keep_first_occurrence_order() -> None:
    assert extract_keywords("zeta alpha mid alpha zeta") == ["zeta", "alpha", "mid"]


def test_extract_keywords_drops_short_tokens_and_honours_limit() -> None:
    assert extract_keywords("a b cd ef gh", max_keywords=2) == ["cd", "ef"]
    assert extract_keywords("", max_keywords=5) == []
    assert extract_keywords("deploy", max_keywords=0) == []


def test_extract_keywords_keeps_hangul_and_filters_korean_stop_words() -> None:
    keywords = extract_keywords("배포 서비스 그리고 배포")
    assert keywords == ["배포", "서비스"]


def test_extract_keywords_is_deterministic() -> None:
    text = "Rollback staging rollback deploy; staging deploy rollback"
    assert extract_keywords(text) == extract_keywords(text)


def test_build_keyword_entries_prefers_tags_then_project_then_content() -> None:
    record = Record(
        id="m1",
        content="ops deploy notes ops infra",
        tags=["Ops ", "release"],
        project="Infra",
    )
    entries = {entry.keyword: entry for entry in build_keyword_entries(record)}

    assert set(entries) == {"ops", "release", "infra", "deploy", "notes"}
    assert entries["ops"].source == KeywordSource.TAGS
    assert entries["ops"].weight == 2.0
    assert entries["infra"].source == KeywordSource.PROJECT
    assert entries["infra"].weight == 1.5
    assert entries["deploy"].source == KeywordSource.CONTENT
    assert entries["deploy"].weight == 1.0


def test_keyword_score_for_single_exact_hit_is_high() -> None:
    content_keywords = extract_keywords("deploy the service")
    score = keyword_match_score(["deploy"], content_keywords, ["ops"])
    assert score >= 10
    assert keyword_relevance_tier(score) == "high"


def test_keyword_score_is_monotonic_in_matched_keywords() -> None:
    query = ["deploy", "service"]
    fewer = keyword_match_score(query, ["deploy", "notes"], [])
    more = keyword_match_score(query, ["deploy", "service"], [])
    assert more > fewer


def test_keyword_score_counts_tags_and_project_bonus() -> None:
    assert keyword_match_score(["ops"], [], ["Ops"]) == 3
    assert keyword_match_score(["zzz"], [], [], project="Infra", project_filter="infra") == 5
    assert keyword_match_score(["zzz"], [], [], project="Infra", project_filter=None) == 0


def test_partial_hit_alone_is_medium() -> None:
    score = keyword_match_score(["deplo"], ["deploy"], [])
    assert score == 5
    assert keyword_relevance_tier(score) == "medium"
    assert keyword_relevance_tier(4) == "low"


@pytest.mark.parametrize("importance", [0, 37, 100])
@pytest.mark.parametrize("weight", [0.0, 0.3, 1.0])
def test_combined_score_stays_within_bounds(importance: int, weight: float) -> None:
    assert 0.0 <= combined_score(importance, weight) <= 100.0


def test_combined_score_tiers_and_full_text_tiers() -> None:
    assert combined_score(80, 0.5) == pytest.approx(90.0)
    assert combined_relevance_tier(90.0) == "high"
    assert combined_relevance_tier(40.0) == "medium"
    assert combined_relevance_tier(39.9) == "low"
    assert full_text_relevance_tier(1.0) == "high"
    assert full_text_relevance_tier(0.5) == "medium"
    assert full_text_relevance_tier(0.1) == "low"


def test_extract_context_centres_on_first_match_with_clip_markers() -> None:
    content = "x" * 200 + " deploy " + "y" * 200
    context = extract_context(content, ["deploy"], context_length=100)
    assert context.startswith("…")
    assert context.endswith("…")
    assert "deploy" in context


def test_extract_context_without_match_returns_prefix() -> None:
    assert extract_context("short text", [], context_length=100) == "short text"
    assert extract_context("abcdefghijkl", [], context_length=10) == "abcdefghij…"


def test_highlight_wraps_every_case_insensitive_occurrence() -> None:
    content = "Deploy and deploy again"
    highlighted = highlight_matches(content, ["deploy"])
    assert highlighted == "**Deploy** and **deploy** again"
    assert content == "Deploy and deploy again"


def test_highlight_prefers_longer_keywords() -> None:
    assert highlight_matches("deployment", ["deploy", "deployment"]) == "**deployment**"


def test_build_match_expression_keeps_phrases_and_quotes_terms() -> None:
    assert build_match_expression('"blue green" deploy the deploy') == (
        '"blue green" "deploy"'
    )
    assert build_match_expression("the") == '"the"'
    assert build_match_expression("??? !!!") == ""
