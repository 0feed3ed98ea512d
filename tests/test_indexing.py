"""Tests for the indexer and the index event listener."""

from unittest.mock import AsyncMock

import numpy as np
import pytest

from hybrid_search.common.events import EventPublisher, EventType
from hybrid_search.errors import CollaboratorError, EmbeddingError
from hybrid_search.search.hybrid.indexing import IndexEventListener, SearchIndexer

from .conftest import InMemoryKeywordEngine, InMemoryVectorStore


@pytest.fixture
def publisher():
    return AsyncMock(spec=EventPublisher)


@pytest.fixture
def keyword_engine():
    return InMemoryKeywordEngine()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def indexer(keyword_engine, vector_store, embedding_provider, indexer_config, cache, publisher, metrics):
    return SearchIndexer(
        keyword_engine=keyword_engine,
        vector_store=vector_store,
        embedding_provider=embedding_provider,
        config=indexer_config,
        cache=cache,
        publisher=publisher,
        metrics=metrics,
    )


DOCUMENTS = {
    "1": {"title": "Hybrid search", "content": "Keyword and vector retrieval"},
    "2": {"title": "Facets", "description": "Counting values"},
    "3": {"content": "Relevance tuning"},
    "4": {"author": "nobody", "title": ""},
}


@pytest.mark.asyncio
async def test_index_batch_writes_both_backends(indexer, keyword_engine, vector_store, embedding_provider):
    indexed = await indexer.index_batch(DOCUMENTS, "docs")

    assert indexed == 4
    assert set(keyword_engine.documents["docs"]) == {"1", "2", "3", "4"}
    assert set(vector_store.collections["docs"]) == {"1", "2", "3"}
    assert embedding_provider.calls[0] == "Hybrid search Keyword and vector retrieval"

    doc_id, vector, metadata = vector_store.collections["docs"]["2"]
    assert doc_id == "2"
    assert isinstance(vector, np.ndarray)
    assert metadata == DOCUMENTS["2"]


@pytest.mark.asyncio
async def test_vectors_are_embedded_in_batches(indexer, embedding_provider):
    embedding_provider.embed_batch = AsyncMock(side_effect=lambda texts: [np.zeros(3) for _ in texts])

    await indexer.index_batch(DOCUMENTS, "docs")

    batch_sizes = [len(call.args[0]) for call in embedding_provider.embed_batch.call_args_list]
    assert batch_sizes == [2, 1]


@pytest.mark.asyncio
async def test_empty_batch_is_a_no_op(indexer, cache, publisher):
    cache.entries["search:x"] = {}

    assert await indexer.index_batch({}, "docs") == 0
    assert cache.entries == {"search:x": {}}
    publisher.publish.assert_not_called()


@pytest.mark.asyncio
async def test_mutation_flushes_cache_and_publishes_event(indexer, cache, publisher, metrics):
    cache.entries["search:abc"] = {"hits": []}

    await indexer.index("1", DOCUMENTS["1"], "docs")

    assert cache.entries == {}
    event = publisher.publish.call_args.args[0]
    assert event.index == "docs"
    assert event.operation == "index"
    assert event.document_ids == ["1"]
    assert event.event_type == EventType.INDEX_UPDATED.value
    assert metrics.registry.get_sample_value("search_index_operations_total", {"operation": "index"}) == 1.0


@pytest.mark.asyncio
async def test_events_disabled_by_config(keyword_engine, vector_store, embedding_provider, publisher):
    indexer = SearchIndexer(keyword_engine, vector_store, embedding_provider, publisher=publisher)

    await indexer.index("1", DOCUMENTS["1"], "docs")

    publisher.publish.assert_not_called()


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_the_mutation(indexer, publisher, keyword_engine):
    publisher.publish.side_effect = ConnectionError("redis down")

    await indexer.index("1", DOCUMENTS["1"], "docs")

    assert "1" in keyword_engine.documents["docs"]


@pytest.mark.asyncio
async def test_update_reports_update_operation(indexer, publisher):
    await indexer.update("1", DOCUMENTS["1"], "docs")

    assert publisher.publish.call_args.args[0].operation == "update"


@pytest.mark.asyncio
async def test_remove_batch(indexer, keyword_engine, vector_store, publisher):
    await indexer.index_batch(DOCUMENTS, "docs")

    removed = await indexer.remove_batch(["1", "4", "missing"], "docs")

    assert removed == 2
    assert set(keyword_engine.documents["docs"]) == {"2", "3"}
    assert set(vector_store.collections["docs"]) == {"2", "3"}
    event = publisher.publish.call_args.args[0]
    assert event.operation == "remove"
    assert event.document_ids == ["1", "4", "missing"]


@pytest.mark.asyncio
async def test_remove_nothing(indexer, publisher):
    assert await indexer.remove_batch([], "docs") == 0
    publisher.publish.assert_not_called()


@pytest.mark.asyncio
async def test_create_index_sizes_collection_for_provider(indexer, keyword_engine, vector_store, publisher):
    await indexer.create_index("docs")

    assert await indexer.index_exists("docs")
    assert vector_store.dimensions["docs"] == 3
    assert publisher.publish.call_args.args[0].event_type == EventType.INDEX_CREATED.value


@pytest.mark.asyncio
async def test_delete_index(indexer, keyword_engine, vector_store, publisher):
    await indexer.create_index("docs")

    await indexer.delete_index("docs")

    assert not await indexer.index_exists("docs")
    assert "docs" not in vector_store.collections
    assert publisher.publish.call_args.args[0].event_type == EventType.INDEX_DELETED.value


@pytest.mark.asyncio
async def test_clear_index_keeps_keyword_index(indexer, keyword_engine, vector_store):
    await indexer.index_batch(DOCUMENTS, "docs")

    await indexer.clear_index("docs")

    assert await indexer.index_exists("docs")
    assert keyword_engine.documents["docs"] == {}
    assert "docs" not in vector_store.collections


@pytest.mark.asyncio
async def test_index_stats(indexer):
    await indexer.index_batch(DOCUMENTS, "docs")

    stats = await indexer.index_stats("docs")

    assert stats["index"] == "docs"
    assert stats["keyword"]["total_documents"] == 4
    assert stats["vectors"]["total_vectors"] == 3
    assert stats["embedding_provider"] == "FakeEmbeddingProvider"
    assert stats["dimension"] == 3


@pytest.mark.asyncio
async def test_backend_errors_are_wrapped(indexer, keyword_engine):
    keyword_engine.error = RuntimeError("disk full")

    with pytest.raises(CollaboratorError) as exc_info:
        await indexer.index("1", DOCUMENTS["1"], "docs")

    assert exc_info.value.collaborator == "keyword"
    assert exc_info.value.operation == "index_batch"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_collaborator_errors_pass_through(indexer, embedding_provider):
    embedding_provider.embed_batch = AsyncMock(side_effect=EmbeddingError("service unavailable", "embed_batch"))

    with pytest.raises(EmbeddingError):
        await indexer.index("1", DOCUMENTS["1"], "docs")


# Listener

@pytest.mark.asyncio
async def test_listener_indexes_searchable_documents(indexer, keyword_engine):
    listener = IndexEventListener(indexer)

    assert await listener.on_create("1", DOCUMENTS["1"], "docs") is True
    assert await listener.on_create("4", DOCUMENTS["4"], "docs") is False
    assert set(keyword_engine.documents["docs"]) == {"1"}


@pytest.mark.asyncio
async def test_listener_update_reindexes_or_removes(indexer, keyword_engine, vector_store):
    listener = IndexEventListener(indexer)
    await listener.on_create("1", DOCUMENTS["1"], "docs")

    updated = {"title": "Hybrid search, revised"}
    assert await listener.on_update("1", updated, "docs") is True
    assert keyword_engine.documents["docs"]["1"] == updated

    assert await listener.on_update("1", updated, "docs", searchable=False) is False
    assert "1" not in keyword_engine.documents["docs"]
    assert "1" not in vector_store.collections["docs"]


@pytest.mark.asyncio
async def test_listener_delete(indexer, keyword_engine):
    listener = IndexEventListener(indexer)
    await listener.on_create("1", DOCUMENTS["1"], "docs")

    await listener.on_delete("1", "docs")

    assert keyword_engine.documents["docs"] == {}
