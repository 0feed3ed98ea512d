"""Shared fixtures and in-memory collaborators."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from prometheus_client import CollectorRegistry

from hybrid_search.common.config import IndexerConfig, SearchConfig
from hybrid_search.common.metrics import MetricsCollector
from hybrid_search.search.hybrid.search_manager import SearchCoordinator
from hybrid_search.search.models import HitSource, SearchHit, SearchQuery
from hybrid_search.search.retrievers.base import EmbeddingProvider, KeywordEngine, SearchCache
from hybrid_search.vector_store.base import VectorRecord, VectorStore


def make_hit(doc_id: str, score: float, source: HitSource = HitSource.KEYWORD, **fields: Any) -> SearchHit:
    return SearchHit(
        id=doc_id,
        document={"id": doc_id, **fields},
        score=score,
        source=source,
    )


class _AsyncContext:
    def __init__(self, value: Any = None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


def make_pool(conn: Optional[AsyncMock] = None) -> MagicMock:
    """asyncpg pool stand-in whose ``acquire()`` yields ``conn``."""
    conn = conn or AsyncMock()
    conn.transaction = MagicMock(return_value=_AsyncContext())
    pool = MagicMock()
    pool.acquire.return_value = _AsyncContext(conn)
    pool.close = AsyncMock()
    pool.conn = conn
    return pool


class InMemoryKeywordEngine(KeywordEngine):
    """Returns preset hits and records every call."""

    def __init__(self, hits: Optional[Sequence[SearchHit]] = None):
        self.hits = list(hits or [])
        self.queries: List[SearchQuery] = []
        self.documents: Dict[str, Dict[str, Mapping[str, Any]]] = {}
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def search(self, query: SearchQuery) -> List[SearchHit]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.hits[query.offset:query.offset + query.limit]

    async def index_batch(self, documents: Mapping[str, Mapping[str, Any]], index: str) -> int:
        if self.error:
            raise self.error
        self.documents.setdefault(index, {}).update(documents)
        return len(documents)

    async def remove_batch(self, ids: Sequence[str], index: str) -> int:
        stored = self.documents.get(index, {})
        return sum(1 for doc_id in ids if stored.pop(doc_id, None) is not None)

    async def clear_index(self, index: str) -> None:
        self.documents[index] = {}

    async def create_index(self, index: str, settings: Optional[Mapping[str, Any]] = None) -> None:
        self.documents.setdefault(index, {})

    async def delete_index(self, index: str) -> None:
        self.documents.pop(index, None)

    async def index_exists(self, index: str) -> bool:
        return index in self.documents

    async def index_stats(self, index: str) -> Dict[str, Any]:
        return {"index_name": index, "total_documents": len(self.documents.get(index, {}))}


class InMemoryVectorStore(VectorStore):
    def __init__(self, hits: Optional[Sequence[SearchHit]] = None):
        self.hits = list(hits or [])
        self.searches: List[Dict[str, Any]] = []
        self.collections: Dict[str, Dict[str, VectorRecord]] = {}
        self.dimensions: Dict[str, int] = {}
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def search(self, vector, collection, limit=10, filters=None) -> List[SearchHit]:
        self.searches.append({"vector": vector, "collection": collection, "limit": limit, "filters": filters})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.hits[:limit]

    async def store_batch(self, records: Sequence[VectorRecord], collection: str) -> int:
        stored = self.collections.setdefault(collection, {})
        for record in records:
            stored[record[0]] = record
        return len(records)

    async def delete_batch(self, ids: Sequence[str], collection: str) -> int:
        stored = self.collections.get(collection, {})
        return sum(1 for doc_id in ids if stored.pop(doc_id, None) is not None)

    async def create_collection(self, collection: str, dimension: int) -> None:
        self.collections.setdefault(collection, {})
        self.dimensions[collection] = dimension

    async def delete_collection(self, collection: str) -> None:
        self.collections.pop(collection, None)

    async def collection_exists(self, collection: str) -> bool:
        return collection in self.collections

    async def collection_stats(self, collection: str) -> Dict[str, Any]:
        return {"collection": collection, "total_vectors": len(self.collections.get(collection, {}))}

    async def health_check(self) -> bool:
        return True


class FakeEmbeddingProvider(EmbeddingProvider):
    def __init__(self, dimension: int = 3):
        self._dimension = dimension
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def max_input_length(self) -> int:
        return 512

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.error:
            raise self.error
        return np.full(self._dimension, float(len(text)), dtype=np.float32)


class InMemoryCache(SearchCache):
    def __init__(self):
        self.entries: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[Any]:
        return self.entries.get(key)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self.entries[key] = value
        self.ttls[key] = ttl

    async def invalidate_all(self) -> int:
        removed = len(self.entries)
        self.entries.clear()
        return removed


@pytest.fixture
def search_config() -> SearchConfig:
    return SearchConfig(
        search_relevance_tuning_enabled=False,
        search_typo_tolerance_enabled=False,
        search_keyword_timeout_seconds=0.5,
        search_semantic_timeout_seconds=0.5,
    )


@pytest.fixture
def indexer_config() -> IndexerConfig:
    return IndexerConfig(search_index_batch_size=2, search_events_enabled=True)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("test-service", registry=CollectorRegistry())


@pytest.fixture
def keyword_engine() -> InMemoryKeywordEngine:
    return InMemoryKeywordEngine([
        make_hit("a", 0.8, title="Alpha", category="books"),
        make_hit("b", 0.6, title="Beta", category="music"),
    ])


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore([
        make_hit("b", 0.9, HitSource.SEMANTIC, title="Beta", category="music"),
        make_hit("c", 0.5, HitSource.SEMANTIC, title="Gamma", category="books"),
    ])


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def coordinator(keyword_engine, vector_store, embedding_provider, cache, search_config, metrics) -> SearchCoordinator:
    return SearchCoordinator(
        keyword_engine=keyword_engine,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        config=search_config,
        cache=cache,
        metrics=metrics,
    )
