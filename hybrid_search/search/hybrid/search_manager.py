"""Search coordinator for hybrid semantic and keyword search.

Runs one search request end to end:

1. validate the query and, when enabled, normalize its text
2. look the request up in the result cache
3. dispatch the keyword and/or semantic branch concurrently, each under its
   own timeout
4. fuse both hit lists by weighted score summation
5. drop hits that fail the filters or the minimum score
6. aggregate facets over every remaining candidate
7. apply relevance tuning, then cut the requested page
8. store the result in the cache

The coordinator holds no process-wide state; collaborators and components
are passed in explicitly (``SearchCoordinator.from_config`` wires the
default adapters).
"""

import asyncio
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import structlog

from ...common.config import SearchConfig
from ...common.filters import filter_values
from ...common.logging import search_context
from ...common.metrics import MetricsCollector
from ...errors import CollaboratorError, EmbeddingError, SearchValidationError
from ...vector_store.base import VectorStore
from ..facets.aggregator import FacetAggregator
from ..intelligence.typo_tolerance import QueryNormalizer
from ..models import FacetEntry, FacetSpec, SearchHit, SearchQuery, SearchResult
from ..ranking.fusion import ResultFusionEngine
from ..ranking.relevance import BoostConfig, RelevanceTuner
from ..retrievers.base import EmbeddingProvider, KeywordEngine, SearchCache
from ..retrievers.cache_manager import generate_cache_key

logger = structlog.get_logger("search_service.search_manager")

RESULT_CACHE_PREFIX = "search:"
EMBEDDING_CACHE_PREFIX = "embedding:"


class BranchFailurePolicy(str, Enum):
    """What to do when one retrieval branch fails.

    ``abort`` fails the whole search. ``degrade`` continues with the
    surviving branch; a search whose every branch failed still fails.
    """
    ABORT = "abort"
    DEGRADE = "degrade"


def matches_filters(hit: SearchHit, filters: Mapping[str, Any]) -> bool:
    """Whether a hit's document satisfies every filter.

    List filters match any of their values; list-valued fields match when
    any element matches. Values compare by their text form, the way the
    stores compare JSON metadata.
    """
    for field_name, expected in filters.items():
        actual = hit.document.get(field_name)
        if actual is None:
            return False

        wanted = set(filter_values(expected))
        present = set(filter_values(actual))

        if not wanted & present:
            return False

    return True


class SearchBuilder:
    """Immutable fluent query builder bound to a coordinator.

    Every method returns a new builder; the builder it was called on is left
    untouched.
    """

    def __init__(
        self,
        coordinator: "SearchCoordinator",
        query: SearchQuery,
        boosts: Optional[BoostConfig] = None
    ):
        self._coordinator = coordinator
        self._query = query
        self._boosts = boosts

    def _derive(self, query: Optional[SearchQuery] = None, boosts: Optional[BoostConfig] = None) -> "SearchBuilder":
        return SearchBuilder(
            self._coordinator,
            query if query is not None else self._query,
            boosts if boosts is not None else self._boosts,
        )

    def in_index(self, index: str) -> "SearchBuilder":
        return self._derive(replace(self._query, index=index))

    def where(self, field_name: str, value: Any) -> "SearchBuilder":
        return self._derive(self._query.with_filters({field_name: value}))

    def where_in(self, field_name: str, values: Sequence[Any]) -> "SearchBuilder":
        return self._derive(self._query.with_filters({field_name: list(values)}))

    def with_facets(self, *facets: FacetSpec) -> "SearchBuilder":
        return self._derive(self._query.with_facets(facets))

    def limit(self, limit: int) -> "SearchBuilder":
        return self._derive(self._query.with_limit(limit))

    def offset(self, offset: int) -> "SearchBuilder":
        return self._derive(self._query.with_offset(offset))

    def with_keywords(self, enabled: bool = True) -> "SearchBuilder":
        return self._derive(replace(self._query, include_keywords=enabled))

    def with_semantic(self, enabled: bool = True) -> "SearchBuilder":
        return self._derive(replace(self._query, include_semantic=enabled))

    def with_weights(self, semantic: float, keyword: Optional[float] = None) -> "SearchBuilder":
        """Set branch weights; ``keyword`` defaults to ``1 - semantic``."""
        if keyword is None:
            keyword = 1.0 - semantic
        return self._derive(self._query.with_weights(semantic, keyword))

    def only_keywords(self) -> "SearchBuilder":
        return self._derive(self._query.only_keywords())

    def only_semantic(self) -> "SearchBuilder":
        return self._derive(self._query.only_semantic())

    def min_score(self, score: float) -> "SearchBuilder":
        return self._derive(replace(self._query, min_score=score))

    def sort_by(self, field_name: str, direction: str = "asc") -> "SearchBuilder":
        return self._derive(replace(self._query, sort_by={**self._query.sort_by, field_name: direction}))

    def highlight(self, *fields: str) -> "SearchBuilder":
        return self._derive(replace(self._query, highlight_fields=fields))

    def typo_tolerant(self, enabled: bool = True) -> "SearchBuilder":
        return self._derive(replace(self._query, typo_tolerant=enabled))

    def search_after(self, cursor: Optional[str]) -> "SearchBuilder":
        return self._derive(replace(self._query, search_after=cursor))

    def boost(self, boosts: BoostConfig) -> "SearchBuilder":
        return self._derive(boosts=boosts)

    def build(self) -> SearchQuery:
        return self._query

    @property
    def boosts(self) -> Optional[BoostConfig]:
        return self._boosts

    async def search(self) -> SearchResult:
        return await self._coordinator.execute(self._query, self._boosts)


class SearchCoordinator:
    """Coordinates hybrid search requests.

    Responsibilities
    - Normalize query text with the typo-tolerant normalizer
    - Run the keyword and semantic branches concurrently with timeouts
    - Fuse, filter, facet, tune and paginate candidates
    - Cache results and query embeddings
    """

    def __init__(
        self,
        keyword_engine: KeywordEngine,
        vector_store: VectorStore,
        embedding_provider: EmbeddingProvider,
        config: Optional[SearchConfig] = None,
        cache: Optional[SearchCache] = None,
        normalizer: Optional[QueryNormalizer] = None,
        fusion: Optional[ResultFusionEngine] = None,
        facet_aggregator: Optional[FacetAggregator] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Construct a coordinator.

        Parameters
        - keyword_engine / vector_store / embedding_provider: Retrieval backends
        - config: ``SearchConfig``; read from the environment when omitted
        - cache: Optional ``SearchCache``; caching is skipped without one
        - normalizer / fusion / facet_aggregator: Component overrides, built
          from ``config`` when omitted
        - metrics: Optional ``MetricsCollector``
        """
        self.config = config or SearchConfig()
        self.keyword_engine = keyword_engine
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.cache = cache if self.config.search_cache_enabled else None
        self.normalizer = normalizer or QueryNormalizer(self.config.typo_tolerance_config())
        self.fusion = fusion or ResultFusionEngine(self.config.search_semantic_overfetch)
        self.facet_aggregator = facet_aggregator or FacetAggregator(self.config.facet_config())
        self.metrics = metrics
        self.failure_policy = BranchFailurePolicy(self.config.search_branch_failure_policy)

    @classmethod
    def from_config(cls, config: Optional[SearchConfig] = None, **kwargs: Any) -> "SearchCoordinator":
        """Coordinator wired to the PostgreSQL, pgvector, HTTP and Redis adapters."""
        from ...vector_store.pgvector import PgVectorStore
        from ..retrievers.cache_manager import RedisSearchCache
        from ..retrievers.embedding import HttpEmbeddingProvider
        from ..retrievers.keyword import PostgresKeywordEngine

        config = config or SearchConfig()

        cache = None
        if config.search_cache_enabled:
            cache = RedisSearchCache(config.search_redis_url, namespace=config.search_cache_prefix)

        return cls(
            keyword_engine=PostgresKeywordEngine(
                config.search_db_dsn,
                pool_size=config.search_db_pool_size,
                searchable_fields=config.search_searchable_fields,
            ),
            vector_store=PgVectorStore(
                config.search_db_dsn,
                pool_size=config.search_db_pool_size,
                vector_dimension=config.search_embedding_dimension,
            ),
            embedding_provider=HttpEmbeddingProvider(
                config.search_embedding_service_url,
                model=config.search_embedding_model,
                dimension=config.search_embedding_dimension,
                max_input_length=config.search_embedding_max_input_length,
                timeout=config.search_embedding_timeout_seconds,
                retry_attempts=config.search_embedding_retry_attempts,
            ),
            config=config,
            cache=cache,
            **kwargs,
        )

    def query(self, text: str = "") -> SearchBuilder:
        """Start a fresh builder seeded with the configured defaults."""
        return SearchBuilder(
            self,
            SearchQuery(
                query=text,
                index="",
                limit=self.config.search_default_limit,
                semantic_weight=self.config.search_semantic_weight,
                keyword_weight=self.config.search_keyword_weight,
            ),
        )

    async def simple_search(
        self,
        text: str,
        index: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> SearchResult:
        builder = self.query(text).in_index(index).offset(offset)
        if limit is not None:
            builder = builder.limit(limit)
        return await builder.search()

    def _validate(self, query: SearchQuery) -> SearchQuery:
        if not query.query or not query.query.strip():
            raise SearchValidationError.missing("query")
        if not query.index:
            raise SearchValidationError.missing("index")
        # Raises when both branches are disabled
        query.mode

        if query.limit > self.config.search_max_limit:
            query = query.with_limit(self.config.search_max_limit)

        if query.search_after is not None:
            cursor = str(query.search_after).strip()
            if cursor.isdigit():
                query = query.with_offset(int(cursor))
            else:
                logger.warning("Ignoring non-numeric search cursor", cursor=cursor[:50])

        return query

    def _normalize(self, query: SearchQuery) -> Tuple[SearchQuery, Optional[str]]:
        if not (self.config.search_typo_tolerance_enabled and query.typo_tolerant):
            return query, None

        correction = self.normalizer.correct_query_with_details(query.query)
        if self.metrics and correction.changed:
            self.metrics.record_typo_corrections(len(correction.replacements))
        if not correction.corrected or correction.corrected == query.query:
            return query, None

        return query.with_query(correction.corrected), query.query

    def _cache_key(self, query: SearchQuery, boosts: Optional[BoostConfig]) -> str:
        return generate_cache_key(RESULT_CACHE_PREFIX, {
            "query": query.query,
            "index": query.index,
            "filters": dict(query.filters),
            "limit": query.limit,
            "offset": query.offset,
            "weights": [query.semantic_weight, query.keyword_weight],
            "mode": query.mode.value,
            "facets": [repr(spec) for spec in query.facets],
            "min_score": query.min_score,
            "sort_by": dict(query.sort_by),
            "highlight_fields": list(query.highlight_fields),
            "boosts": boosts.model_dump(mode="json") if boosts else None,
        })

    async def _cache_get(self, key: str, cache_type: str) -> Optional[Any]:
        if self.cache is None:
            return None
        try:
            cached = await self.cache.get(key)
        except CollaboratorError as e:
            logger.warning("Cache read failed, continuing uncached", cache_type=cache_type, error=str(e))
            return None

        if self.metrics:
            if cached is None:
                self.metrics.record_cache_miss(cache_type)
            else:
                self.metrics.record_cache_hit(cache_type)
        return cached

    async def _cache_set(self, key: str, value: Any, ttl: int, cache_type: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, value, ttl)
        except CollaboratorError as e:
            logger.warning("Cache write failed", cache_type=cache_type, error=str(e))

    async def embed(self, text: str) -> np.ndarray:
        """Query embedding, served from the ``embedding:`` cache when possible."""
        key = generate_cache_key(EMBEDDING_CACHE_PREFIX, text)

        cached = await self._cache_get(key, "embeddings")
        if cached is not None:
            return np.asarray(cached["embedding"], dtype=np.float32)

        try:
            vector = await self.embedding_provider.embed(text)
        except CollaboratorError:
            raise
        except Exception as e:
            logger.error("Query embedding failed", error=str(e))
            raise EmbeddingError(f"Failed to embed query: {e}", "embed") from e

        await self._cache_set(
            key,
            {"embedding": np.asarray(vector).tolist()},
            self.config.search_embedding_cache_ttl,
            "embeddings",
        )
        return vector

    async def _keyword_branch(self, query: SearchQuery) -> List[SearchHit]:
        # The fused list is paginated, so fetch the whole window from offset 0
        branch_query = replace(query, offset=0, limit=self.fusion.keyword_fetch_limit(query))
        return await self.keyword_engine.search(branch_query)

    async def _semantic_branch(self, query: SearchQuery) -> List[SearchHit]:
        vector = await self.embed(query.query)
        return await self.vector_store.search(
            vector,
            query.index,
            limit=self.fusion.semantic_fetch_limit(query),
            filters=dict(query.filters),
        )

    async def _run_branch(self, branch: str, call: Awaitable[List[SearchHit]], timeout: float) -> List[SearchHit]:
        start_time = time.perf_counter()
        try:
            hits = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            self._record_branch_failure(branch, "timeout")
            raise CollaboratorError(branch, f"search timed out after {timeout}s", "search") from e
        except CollaboratorError:
            self._record_branch_failure(branch, "error")
            raise
        except Exception as e:
            self._record_branch_failure(branch, "error")
            raise CollaboratorError(branch, f"search failed: {e}", "search") from e

        if self.metrics:
            self.metrics.record_branch(branch, time.perf_counter() - start_time)
        return list(hits)

    def _record_branch_failure(self, branch: str, reason: str) -> None:
        if self.metrics:
            self.metrics.record_branch_failure(branch, reason)

    async def _retrieve(self, query: SearchQuery) -> Tuple[List[SearchHit], List[SearchHit]]:
        """Run the enabled branches concurrently and apply the failure policy."""
        mode = query.mode
        branches: Dict[str, Any] = {}

        if mode.uses_keywords:
            branches["keyword"] = self._run_branch(
                "keyword",
                self._keyword_branch(query),
                self.config.search_keyword_timeout_seconds,
            )
        if mode.uses_semantic:
            branches["semantic"] = self._run_branch(
                "semantic",
                self._semantic_branch(query),
                self.config.search_semantic_timeout_seconds,
            )

        tasks = {name: asyncio.create_task(branch) for name, branch in branches.items()}
        return_when = (
            asyncio.FIRST_EXCEPTION if self.failure_policy is BranchFailurePolicy.ABORT else asyncio.ALL_COMPLETED
        )
        try:
            await asyncio.wait(tasks.values(), return_when=return_when)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Branches cancelled after a failure under ``abort`` have no outcome
        results: Dict[str, Any] = {}
        for name, task in tasks.items():
            if task.cancelled():
                continue
            error = task.exception()
            results[name] = error if error is not None else task.result()

        failures = {name: outcome for name, outcome in results.items() if isinstance(outcome, BaseException)}
        for name, error in failures.items():
            if not isinstance(error, Exception):
                raise error

        if failures:
            if self.failure_policy is BranchFailurePolicy.ABORT or len(failures) == len(results):
                name, error = next(iter(failures.items()))
                logger.error("Search branch failed", branch=name, index=query.index, error=str(error))
                raise error

            for name, error in failures.items():
                logger.warning(
                    "Search branch failed, continuing with remaining branch",
                    branch=name,
                    index=query.index,
                    error=str(error)
                )

        keyword_hits = results.get("keyword")
        semantic_hits = results.get("semantic")
        return (
            keyword_hits if isinstance(keyword_hits, list) else [],
            semantic_hits if isinstance(semantic_hits, list) else [],
        )

    def _tune(self, hits: List[SearchHit], query: SearchQuery, boosts: Optional[BoostConfig]) -> Tuple[List[SearchHit], bool]:
        if not self.config.search_relevance_tuning_enabled:
            return hits, False

        boost_config = boosts or self.config.default_boosts()
        if boost_config.query_field_boosts and not boost_config.query:
            boost_config = boost_config.model_copy(update={"query": query.query})

        tuner = RelevanceTuner.from_config(boost_config)
        if not tuner.enabled_factors:
            return hits, False

        return tuner.tune_hits(hits), True

    async def execute(self, query: SearchQuery, boosts: Optional[BoostConfig] = None) -> SearchResult:
        """Run a search request.

        Raises
        - ``SearchValidationError`` when the query text or index is missing
        - ``CollaboratorError`` when a branch fails under the ``abort``
          policy, or every branch fails under ``degrade``
        """
        start_time = time.perf_counter()

        query = self._validate(query)
        query, original_query = self._normalize(query)
        mode = query.mode

        cache_key = self._cache_key(query, boosts)
        cached = await self._cache_get(cache_key, "results")
        if cached is not None:
            logger.info("Search cache hit", query=query.query[:50], index=query.index)
            return SearchResult.from_dict(cached)

        try:
            with search_context(index=query.index, mode=mode.value):
                keyword_hits, semantic_hits = await self._retrieve(query)

            candidates = self.fusion.fuse(
                keyword_hits,
                semantic_hits,
                keyword_weight=query.keyword_weight,
                semantic_weight=query.semantic_weight,
            )

            if query.filters:
                candidates = [hit for hit in candidates if matches_filters(hit, query.filters)]
            if query.min_score > 0:
                candidates = [hit for hit in candidates if hit.score >= query.min_score]

            facets: Dict[str, List[FacetEntry]] = {}
            if self.config.search_facets_enabled and query.facets:
                facets = self.facet_aggregator.aggregate(candidates, query.facets)

            candidates, tuning_applied = self._tune(candidates, query, boosts)

            total = len(candidates)
            page = self.fusion.paginate(candidates, query.offset, query.limit)
            next_offset = query.offset + query.limit

            echo = query.echo()
            echo["relevance_tuning_applied"] = tuning_applied
            if original_query is not None:
                echo["original_query"] = original_query

            result = SearchResult(
                hits=tuple(page),
                total=total,
                offset=query.offset,
                limit=query.limit,
                processing_time=time.perf_counter() - start_time,
                facets=facets,
                query=echo,
                next_cursor=str(next_offset) if next_offset < total else None,
            )
        except Exception as e:
            logger.error("Search failed", query=query.query[:50], index=query.index, error=str(e))
            raise

        await self._cache_set(cache_key, result.to_dict(), self.config.search_cache_ttl, "results")

        if self.metrics:
            self.metrics.record_search(mode.value, result.processing_time)

        logger.info(
            "Search completed",
            index=query.index,
            mode=mode.value,
            results_count=len(result.hits),
            total=total,
            keyword_count=len(keyword_hits),
            semantic_count=len(semantic_hits),
            processing_time=result.processing_time
        )

        return result

    async def invalidate_cache(self) -> int:
        """Flush the whole cache namespace. Returns the number of keys removed."""
        if self.cache is None:
            return 0
        try:
            removed = await self.cache.invalidate_all()
        except CollaboratorError as e:
            logger.error("Cache invalidation failed", error=str(e))
            return 0

        logger.info("Search cache invalidated", keys_deleted=removed)
        return removed

    async def health_check(self) -> Dict[str, bool]:
        """Health of each collaborator plus an overall ``healthy`` flag."""
        keyword_ok, vector_ok, embedding_ok = await asyncio.gather(
            self.keyword_engine.health_check(),
            self.vector_store.health_check(),
            self.embedding_provider.is_available(),
            return_exceptions=True,
        )

        status = {
            "keyword": keyword_ok is True,
            "vector_store": vector_ok is True,
            "embedding": embedding_ok is True,
        }
        status["healthy"] = all(status.values())

        if not status["healthy"]:
            logger.warning("Search health check degraded", **status)
        return status

    async def close(self) -> None:
        """Close collaborators that hold connections."""
        for collaborator in (self.keyword_engine, self.vector_store, self.embedding_provider, self.cache):
            close = getattr(collaborator, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Failed to close collaborator", collaborator=type(collaborator).__name__, error=str(e))

        logger.info("Search coordinator closed")
