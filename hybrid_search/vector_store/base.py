"""Base vector store interface.

Defines the abstract contract the search coordinator and indexer depend on,
independent of the backing implementation.

Vectors live in named collections; a collection corresponds to a search
index. Every vector is stored with the document metadata it was built from
so semantic hits can be returned without a second lookup.

All methods are asynchronous to support high-throughput services.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..errors import CollaboratorError
from ..search.models import SearchHit

VectorRecord = Tuple[str, np.ndarray, Mapping[str, Any]]


class VectorStore(ABC):
    """Abstract base class for vector stores.

    Implementations should ensure idempotent upserts keyed by
    ``(id, collection)`` and return similarity scores where larger is
    closer.
    """

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def search(
        self,
        vector: np.ndarray,
        collection: str,
        limit: int = 10,
        filters: Optional[Mapping[str, Any]] = None
    ) -> List[SearchHit]:
        """Search for the nearest vectors in ``collection``.

        Returns
        - Hits sorted by descending similarity, with ``source=semantic`` and
          the stored metadata (plus ``id``) as the document
        """
        pass

    @abstractmethod
    async def store_batch(self, records: Sequence[VectorRecord], collection: str) -> int:
        """Upsert ``(id, vector, metadata)`` records.

        Returns the number of records stored.
        """
        pass

    async def store(self, doc_id: str, vector: np.ndarray, metadata: Mapping[str, Any], collection: str) -> None:
        await self.store_batch([(doc_id, vector, metadata)], collection)

    @abstractmethod
    async def delete_batch(self, ids: Sequence[str], collection: str) -> int:
        """Delete vectors by id. Returns the number of rows removed."""
        pass

    async def delete(self, doc_id: str, collection: str) -> int:
        return await self.delete_batch([doc_id], collection)

    @abstractmethod
    async def create_collection(self, collection: str, dimension: int) -> None:
        pass

    @abstractmethod
    async def delete_collection(self, collection: str) -> None:
        pass

    @abstractmethod
    async def collection_exists(self, collection: str) -> bool:
        pass

    @abstractmethod
    async def collection_stats(self, collection: str) -> Dict[str, Any]:
        """Vector count and age bounds for a collection."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the vector store is healthy."""
        pass


class VectorStoreError(CollaboratorError):
    """Base exception for vector store operations."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__("vector_store", message, operation)


class VectorStoreConnectionError(VectorStoreError):
    """Connection error to vector store."""
    pass


class VectorStoreQueryError(VectorStoreError):
    """Query error in vector store."""
    pass
