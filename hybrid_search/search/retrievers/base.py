"""Collaborator interfaces the search core is written against.

The coordinator and indexer never talk to a database, an embedding model
or a cache directly. They go through these abstract classes, and the
adapters in this package (``keyword``, ``embedding``, ``cache_manager``)
implement them. Tests substitute in-memory fakes.

The vector store contract lives in ``hybrid_search.vector_store.base``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..models import SearchHit, SearchQuery


class KeywordEngine(ABC):
    """Lexical (full-text) retrieval over named indexes."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def search(self, query: SearchQuery) -> List[SearchHit]:
        """Return hits for ``query`` honouring its filters, sort, offset and limit.

        Returns
        - Hits sorted by descending relevance with ``source=keyword``
        """
        pass

    @abstractmethod
    async def index_batch(self, documents: Mapping[str, Mapping[str, Any]], index: str) -> int:
        """Upsert documents keyed by id. Returns the number indexed."""
        pass

    @abstractmethod
    async def remove_batch(self, ids: Sequence[str], index: str) -> int:
        pass

    @abstractmethod
    async def clear_index(self, index: str) -> None:
        pass

    @abstractmethod
    async def create_index(self, index: str, settings: Optional[Mapping[str, Any]] = None) -> None:
        pass

    @abstractmethod
    async def delete_index(self, index: str) -> None:
        pass

    @abstractmethod
    async def index_exists(self, index: str) -> bool:
        pass

    @abstractmethod
    async def index_stats(self, index: str) -> Dict[str, Any]:
        pass

    async def health_check(self) -> bool:
        return True


class EmbeddingProvider(ABC):
    """Turns text into a fixed-dimension vector."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    @abstractmethod
    def dimension(self) -> int:
        pass

    @property
    @abstractmethod
    def max_input_length(self) -> int:
        pass

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        pass

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed several texts; providers with a batch endpoint override this."""
        return [await self.embed(text) for text in texts]

    async def is_available(self) -> bool:
        return True


class SearchCache(ABC):
    """Key/value cache for results and query embeddings.

    Keys are already namespaced by the caller; values are JSON-compatible.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    async def invalidate_all(self) -> int:
        """Drop every entry in the cache namespace. Returns the number removed."""
        pass
