"""Hybrid keyword + semantic search library.

Subpackages:
- ``hybrid_search.search``: query models, typo tolerance, fusion, relevance
  tuning, faceting, the search coordinator and the indexer.
- ``hybrid_search.vector_store``: vector store abstraction and the pgvector
  backend.
- ``hybrid_search.common``: configuration, logging, metrics and events.

Usage:
- ``SearchCoordinator.from_config()`` wires the default backends.
"""
