"""Tests for the search request and response types."""

import pytest

from hybrid_search.errors import SearchValidationError
from hybrid_search.search.models import (
    FacetEntry,
    HitSource,
    RetrievalMode,
    SearchHit,
    SearchQuery,
    SearchResult,
)

from .conftest import make_hit


def test_negative_weights_are_rejected():
    with pytest.raises(SearchValidationError):
        SearchQuery(query="q", index="docs", semantic_weight=-0.1)


def test_weights_need_not_sum_to_one():
    query = SearchQuery(query="q", index="docs", semantic_weight=2.0, keyword_weight=3.0)

    assert query.mode is RetrievalMode.HYBRID


def test_derivations_leave_source_untouched():
    query = SearchQuery(query="q", index="docs", filters={"a": 1})

    derived = query.with_filters({"b": 2}).with_limit(5).with_offset(10)

    assert derived.filters == {"a": 1, "b": 2}
    assert (derived.limit, derived.offset) == (5, 10)
    assert query.filters == {"a": 1}
    assert (query.limit, query.offset) == (10, 0)


def test_retrieval_mode_from_toggles():
    assert SearchQuery(query="q", index="d").only_keywords().mode is RetrievalMode.KEYWORD
    assert SearchQuery(query="q", index="d").only_semantic().mode is RetrievalMode.SEMANTIC

    with pytest.raises(SearchValidationError):
        RetrievalMode.from_toggles(False, False)


def test_hit_accessors():
    hit = make_hit("1", 0.5, title="Alpha", empty=None)

    assert hit.get("title") == "Alpha"
    assert hit.get("empty", "fallback") == "fallback"
    assert hit.has("empty")
    assert not hit.has("missing")

    boosted = hit.with_score(1.0, total_boost=2.0)
    assert boosted.score == 1.0
    assert boosted.metadata == {"total_boost": 2.0}
    assert hit.metadata == {}


def test_result_helpers():
    result = SearchResult(
        hits=[make_hit("1", 0.9, title="A"), make_hit("2", 0.8, title="B")],
        total=5,
        offset=0,
        limit=2,
        processing_time=0.01,
    )

    assert result.has_more
    assert not result.is_empty
    assert result.first_hit.id == "1"
    assert result.pluck("title") == ["A", "B"]


def test_result_survives_serialization():
    result = SearchResult(
        hits=(SearchHit(id="1", document={"title": "A"}, score=0.9, highlights=("<mark>a</mark>",),
                        metadata={"keyword_score": 0.9}, source=HitSource.KEYWORD),),
        total=1,
        offset=0,
        limit=10,
        processing_time=0.01,
        facets={"path": [FacetEntry("a", 1, children=(FacetEntry("b", 1, level=1),))]},
        query={"query": "a"},
    )

    assert SearchResult.from_dict(result.to_dict()) == result
