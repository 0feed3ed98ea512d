"""Tests for the hybrid search library.

Collaborators (keyword engine, vector store, embedding provider, cache) are
replaced by the in-memory fakes in ``conftest``; the concrete adapters are
exercised against mocked asyncpg, httpx and Redis clients.
"""
