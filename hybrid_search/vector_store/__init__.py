"""Vector store adapters.

Primary components:
- ``base``: abstract ``VectorStore`` interface and its exceptions.
- ``pgvector``: PostgreSQL/pgvector implementation of the interface.
"""
