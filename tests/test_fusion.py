"""Tests for weighted-sum result fusion."""

import pytest

from hybrid_search.search.models import HitSource, SearchHit, SearchQuery
from hybrid_search.search.ranking.fusion import ResultFusionEngine

from .conftest import make_hit


@pytest.fixture
def fusion():
    return ResultFusionEngine()


def test_fuse_weighted_sum_and_order(fusion):
    keyword_hits = [make_hit("A", 0.8), make_hit("B", 0.6)]
    semantic_hits = [
        make_hit("B", 0.9, HitSource.SEMANTIC),
        make_hit("C", 0.5, HitSource.SEMANTIC),
    ]

    fused = fusion.fuse(keyword_hits, semantic_hits, keyword_weight=0.3, semantic_weight=0.7)

    assert [hit.id for hit in fused] == ["B", "C", "A"]
    assert [hit.score for hit in fused] == pytest.approx([0.81, 0.35, 0.24])
    assert [hit.source for hit in fused] == [HitSource.HYBRID, HitSource.SEMANTIC, HitSource.KEYWORD]


def test_fuse_records_raw_component_scores(fusion):
    fused = fusion.fuse(
        [make_hit("A", 0.8)],
        [make_hit("A", 0.4, HitSource.SEMANTIC), make_hit("B", 0.2, HitSource.SEMANTIC)],
        keyword_weight=0.5,
        semantic_weight=0.5,
    )
    by_id = {hit.id: hit for hit in fused}

    assert by_id["A"].metadata["keyword_score"] == 0.8
    assert by_id["A"].metadata["semantic_score"] == 0.4
    assert "keyword_score" not in by_id["B"].metadata
    assert by_id["B"].metadata["semantic_score"] == 0.2


def test_hybrid_hit_keeps_keyword_document_and_highlights(fusion):
    keyword_hit = SearchHit(
        id="A",
        document={"title": "From keyword"},
        score=0.5,
        highlights=("<mark>key</mark>",),
        source=HitSource.KEYWORD,
    )
    semantic_hit = make_hit("A", 0.5, HitSource.SEMANTIC, title="From vector")

    fused = fusion.fuse([keyword_hit], [semantic_hit], keyword_weight=1.0, semantic_weight=1.0)

    assert fused[0].document["title"] == "From keyword"
    assert fused[0].highlights == ("<mark>key</mark>",)
    assert fused[0].score == pytest.approx(1.0)


def test_ties_keep_first_seen_order(fusion):
    fused = fusion.fuse(
        [make_hit("k1", 1.0), make_hit("k2", 1.0)],
        [make_hit("s1", 1.0, HitSource.SEMANTIC)],
        keyword_weight=0.5,
        semantic_weight=0.5,
    )

    assert [hit.id for hit in fused] == ["k1", "k2", "s1"]


def test_output_is_non_increasing(fusion):
    keyword_hits = [make_hit(f"k{i}", score) for i, score in enumerate([0.1, 0.9, 0.4, 0.7])]
    semantic_hits = [make_hit(f"k{i}", score, HitSource.SEMANTIC) for i, score in enumerate([0.3, 0.2, 0.8])]

    scores = [hit.score for hit in fusion.fuse(keyword_hits, semantic_hits, 0.3, 0.7)]

    assert scores == sorted(scores, reverse=True)


def test_empty_inputs(fusion):
    assert fusion.fuse([], [], 0.3, 0.7) == []


def test_fetch_limits_cover_the_page_window():
    fusion = ResultFusionEngine(semantic_overfetch=3)
    query = SearchQuery(query="q", index="docs", limit=10, offset=20)

    assert fusion.candidate_window(query) == 30
    assert fusion.keyword_fetch_limit(query) == 30
    assert fusion.semantic_fetch_limit(query) == 90


def test_paginate_slices_fused_list(fusion):
    hits = [make_hit(str(i), 1.0 - i / 10) for i in range(5)]

    assert [hit.id for hit in fusion.paginate(hits, 1, 2)] == ["1", "2"]
    assert fusion.paginate(hits, 10, 2) == []
