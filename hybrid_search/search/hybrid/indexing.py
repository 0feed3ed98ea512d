"""Index maintenance for hybrid search.

``SearchIndexer`` keeps the keyword index and the vector collection of a
search index in step: documents go to the keyword engine as-is, while their
searchable text (the configured ``searchable_fields`` joined by spaces) is
embedded and stored in the vector store. Documents without searchable text
are only keyword-indexed.

Any mutation flushes the result cache and, when a publisher is configured,
announces an ``IndexUpdatedEvent`` so other processes can drop theirs.

``IndexEventListener`` exposes create/update/delete callbacks for a
persistence layer that wants documents indexed automatically.
"""

import time
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, TypeVar

import structlog

from ...common.config import IndexerConfig
from ...common.events import EventPublisher, EventType, IndexUpdatedEvent
from ...common.logging import log_performance
from ...common.metrics import MetricsCollector
from ...errors import CollaboratorError
from ...vector_store.base import VectorRecord, VectorStore
from ..retrievers.base import EmbeddingProvider, KeywordEngine, SearchCache
from ..retrievers.keyword import extract_content

logger = structlog.get_logger("search_service.indexer")

T = TypeVar("T")


class SearchIndexer:
    """Writes documents to both retrieval backends."""

    def __init__(
        self,
        keyword_engine: KeywordEngine,
        vector_store: VectorStore,
        embedding_provider: EmbeddingProvider,
        config: Optional[IndexerConfig] = None,
        cache: Optional[SearchCache] = None,
        publisher: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or IndexerConfig()
        self.keyword_engine = keyword_engine
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.cache = cache
        self.publisher = publisher
        self.metrics = metrics
        self.searchable_fields = tuple(self.config.search_searchable_fields)
        self.batch_size = max(1, self.config.search_index_batch_size)

    async def _call(self, collaborator: str, operation: str, call: Awaitable[T]) -> T:
        """Await a collaborator call, wrapping foreign errors in ``CollaboratorError``."""
        try:
            return await call
        except CollaboratorError as e:
            logger.error("Index operation failed", collaborator=collaborator, operation=operation, error=str(e))
            raise
        except Exception as e:
            logger.error("Index operation failed", collaborator=collaborator, operation=operation, error=str(e))
            raise CollaboratorError(collaborator, f"{operation} failed: {e}", operation) from e

    def searchable_content(self, document: Mapping[str, Any]) -> str:
        return extract_content(document, self.searchable_fields)

    async def _after_mutation(
        self,
        index: str,
        operation: str,
        document_ids: Sequence[str],
        event_type: EventType = EventType.INDEX_UPDATED
    ) -> None:
        if self.metrics:
            self.metrics.record_index_operation(operation, max(1, len(document_ids)))

        if self.cache is not None:
            try:
                await self.cache.invalidate_all()
            except CollaboratorError as e:
                logger.error("Cache invalidation after index change failed", index=index, error=str(e))

        if self.publisher is not None and self.config.search_events_enabled:
            event = IndexUpdatedEvent(
                index=index,
                operation=operation,
                document_ids=list(document_ids),
                event_type=event_type.value,
            )
            try:
                await self.publisher.publish(event)
            except Exception as e:
                logger.warning("Index event not published", index=index, operation=operation, error=str(e))

    async def _store_vectors(self, documents: Mapping[str, Mapping[str, Any]], index: str) -> int:
        contents = [
            (doc_id, self.searchable_content(document), document)
            for doc_id, document in documents.items()
        ]
        contents = [item for item in contents if item[1]]

        stored = 0
        for start in range(0, len(contents), self.batch_size):
            batch = contents[start:start + self.batch_size]
            vectors = await self._call(
                "embedding",
                "embed_batch",
                self.embedding_provider.embed_batch([content for _, content, _ in batch]),
            )
            records: List[VectorRecord] = [
                (doc_id, vector, dict(document))
                for (doc_id, _, document), vector in zip(batch, vectors)
            ]
            stored += await self._call("vector_store", "store_batch", self.vector_store.store_batch(records, index))

        return stored

    async def index_batch(self, documents: Mapping[str, Mapping[str, Any]], index: str, operation: str = "index") -> int:
        """Index documents keyed by id. Returns the number keyword-indexed."""
        if not documents:
            return 0

        start_time = time.perf_counter()
        indexed = await self._call("keyword", "index_batch", self.keyword_engine.index_batch(documents, index))
        vectors = await self._store_vectors(documents, index)

        logger.info(
            "Documents indexed",
            index=index,
            operation=operation,
            count=indexed,
            vectors_stored=vectors
        )
        log_performance("index_batch", (time.perf_counter() - start_time) * 1000, index=index, count=indexed)

        await self._after_mutation(index, operation, list(documents))
        return indexed

    async def index(self, doc_id: str, document: Mapping[str, Any], index: str) -> None:
        await self.index_batch({doc_id: document}, index)

    async def update(self, doc_id: str, document: Mapping[str, Any], index: str) -> None:
        await self.index_batch({doc_id: document}, index, operation="update")

    async def remove_batch(self, ids: Sequence[str], index: str) -> int:
        """Remove documents from both backends. Returns the keyword rows removed."""
        ids = list(ids)
        if not ids:
            return 0

        removed = await self._call("keyword", "remove_batch", self.keyword_engine.remove_batch(ids, index))
        await self._call("vector_store", "delete_batch", self.vector_store.delete_batch(ids, index))

        logger.info("Documents removed", index=index, requested=len(ids), removed=removed)

        await self._after_mutation(index, "remove", ids)
        return removed

    async def remove(self, doc_id: str, index: str) -> None:
        await self.remove_batch([doc_id], index)

    async def create_index(self, index: str, settings: Optional[Mapping[str, Any]] = None) -> None:
        """Create the keyword index and a vector collection sized for the provider."""
        await self._call("keyword", "create_index", self.keyword_engine.create_index(index, settings))
        await self._call(
            "vector_store",
            "create_collection",
            self.vector_store.create_collection(index, self.embedding_provider.dimension),
        )

        logger.info("Search index created", index=index, dimension=self.embedding_provider.dimension)
        await self._after_mutation(index, "create", [], EventType.INDEX_CREATED)

    async def delete_index(self, index: str) -> None:
        await self._call("keyword", "delete_index", self.keyword_engine.delete_index(index))
        await self._call("vector_store", "delete_collection", self.vector_store.delete_collection(index))

        logger.info("Search index deleted", index=index)
        await self._after_mutation(index, "delete", [], EventType.INDEX_DELETED)

    async def clear_index(self, index: str) -> None:
        """Remove every document while keeping the index."""
        await self._call("keyword", "clear_index", self.keyword_engine.clear_index(index))
        await self._call("vector_store", "delete_collection", self.vector_store.delete_collection(index))

        logger.info("Search index cleared", index=index)
        await self._after_mutation(index, "clear", [])

    async def index_exists(self, index: str) -> bool:
        return await self._call("keyword", "index_exists", self.keyword_engine.index_exists(index))

    async def index_stats(self, index: str) -> Dict[str, Any]:
        keyword_stats = await self._call("keyword", "index_stats", self.keyword_engine.index_stats(index))
        vector_stats = await self._call("vector_store", "collection_stats", self.vector_store.collection_stats(index))

        return {
            "index": index,
            "keyword": keyword_stats,
            "vectors": vector_stats,
            "embedding_provider": self.embedding_provider.name,
            "dimension": self.embedding_provider.dimension,
        }


class IndexEventListener:
    """Callbacks that keep an index in sync with a persistence layer.

    A document is searchable by default when it has searchable text; the
    persistence layer may override that on update.
    """

    def __init__(self, indexer: SearchIndexer):
        self.indexer = indexer

    async def on_create(self, doc_id: str, document: Mapping[str, Any], index: str) -> bool:
        """Index a new document. Returns whether it was indexed."""
        if not self.indexer.searchable_content(document):
            logger.debug("Skipping document without searchable content", doc_id=doc_id, index=index)
            return False

        await self.indexer.index(doc_id, document, index)
        return True

    async def on_update(
        self,
        doc_id: str,
        document: Mapping[str, Any],
        index: str,
        searchable: bool = True
    ) -> bool:
        """Re-index a document, or remove it once it is no longer searchable.

        Returns whether the document is indexed afterwards.
        """
        if searchable and self.indexer.searchable_content(document):
            await self.indexer.update(doc_id, document, index)
            return True

        await self.indexer.remove(doc_id, index)
        return False

    async def on_delete(self, doc_id: str, index: str) -> None:
        await self.indexer.remove(doc_id, index)
