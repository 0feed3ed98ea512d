"""Result fusion for hybrid search.

Merges the keyword-sourced and semantic-sourced hit lists into a single
ranked list using weighted score summation:

- each raw score is multiplied by its source weight;
- a document found by both sources scores the **sum** of both weighted
  scores and is tagged ``hybrid``;
- the fused list is sorted by score, ties keep first-seen order (keyword
  hits first, then semantic-only additions).

Pagination is applied to the fused list, never to the source lists, which is
why the semantic branch over-fetches.
"""

from typing import Dict, List, Sequence

import structlog

from ..models import HitSource, SearchHit, SearchQuery

logger = structlog.get_logger("search_service.fusion")


class ResultFusionEngine:
    """Weighted-sum fusion of keyword and semantic hits.

    Parameters
    - semantic_overfetch: Multiplier applied to the page window when
      requesting semantic candidates (default 2)
    """

    def __init__(self, semantic_overfetch: int = 2):
        self.semantic_overfetch = max(1, semantic_overfetch)

    def candidate_window(self, query: SearchQuery) -> int:
        """Number of fused candidates needed to serve the requested page."""
        return query.offset + query.limit

    def keyword_fetch_limit(self, query: SearchQuery) -> int:
        return self.candidate_window(query)

    def semantic_fetch_limit(self, query: SearchQuery) -> int:
        return self.candidate_window(query) * self.semantic_overfetch

    def fuse(
        self,
        keyword_hits: Sequence[SearchHit],
        semantic_hits: Sequence[SearchHit],
        keyword_weight: float,
        semantic_weight: float,
    ) -> List[SearchHit]:
        """Fuse both hit lists into one list sorted by descending fused score."""
        combined: Dict[str, SearchHit] = {}

        for hit in keyword_hits:
            combined[hit.id] = SearchHit(
                id=hit.id,
                document=hit.document,
                score=hit.score * keyword_weight,
                highlights=hit.highlights,
                metadata={**hit.metadata, "keyword_score": hit.score},
                source=HitSource.KEYWORD,
            )

        for hit in semantic_hits:
            weighted = hit.score * semantic_weight
            existing = combined.get(hit.id)

            if existing is not None:
                # Keyword document and highlights are assumed richer
                combined[hit.id] = SearchHit(
                    id=hit.id,
                    document=existing.document,
                    score=existing.score + weighted,
                    highlights=existing.highlights,
                    metadata={**hit.metadata, **existing.metadata, "semantic_score": hit.score},
                    source=HitSource.HYBRID,
                )
            else:
                combined[hit.id] = SearchHit(
                    id=hit.id,
                    document=hit.document,
                    score=weighted,
                    highlights=hit.highlights,
                    metadata={**hit.metadata, "semantic_score": hit.score},
                    source=HitSource.SEMANTIC,
                )

        # sorted() is stable, so equal scores keep insertion order
        fused = sorted(combined.values(), key=lambda h: h.score, reverse=True)

        logger.debug(
            "Weighted fusion completed",
            keyword_count=len(keyword_hits),
            semantic_count=len(semantic_hits),
            fused_count=len(fused),
            keyword_weight=keyword_weight,
            semantic_weight=semantic_weight
        )

        return fused

    def paginate(self, hits: Sequence[SearchHit], offset: int, limit: int) -> List[SearchHit]:
        return list(hits[offset:offset + limit])
