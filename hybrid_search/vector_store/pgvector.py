"""PgVector implementation of vector store.

This implementation stores vectors in PostgreSQL using the pgvector extension.
Cosine distance is computed using the ``<=>`` operator and converted to a
``similarity`` score (``1 - distance``) for consistency with the keyword
engine's larger-is-better scores.

Schema
- One table (default ``vector_embeddings``) shared by all collections, keyed
  by ``(id, collection)``, with a ``jsonb`` metadata column and an HNSW
  cosine index on the vector column

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from ..common.filters import filter_values, metadata_filter_sql
from ..search.models import HitSource, SearchHit
from .base import (
    VectorRecord,
    VectorStore,
    VectorStoreConnectionError,
    VectorStoreQueryError,
)

logger = structlog.get_logger("search_service.vector_store")


class PgVectorStore(VectorStore):
    """PgVector implementation of vector store."""

    def __init__(
        self,
        dsn: str,
        table: str = "vector_embeddings",
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
        vector_dimension: Optional[int] = None,
    ):
        """Configure a PgVector-backed vector store.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - table: Table holding vectors of every collection
        - pool_size: Max size of asyncpg connection pool
        - max_queries: Queries per connection before recycling
        - command_timeout: Seconds to allow per DB command
        - vector_dimension: Expected dimensionality for stored vectors
        """
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")

        self.dsn = dsn
        self.table = table
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self.vector_dimension = vector_dimension
        self._pool: Optional[Pool] = None

    @property
    def name(self) -> str:
        return "postgresql-pgvector"

    async def _init_connection(self, conn: Connection) -> None:
        """Register pgvector codec for asyncpg connections."""
        await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or create connection pool.

        Lazily initializes an asyncpg pool so callers don't pay startup cost
        unless/until they make a call that requires the database.
        """
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    max_queries=self.max_queries,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created PgVector connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create PgVector connection pool", error=str(e))
                raise VectorStoreConnectionError(f"Failed to create connection pool: {e}", "connect") from e

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False,
        fetch_val: bool = False
    ) -> Any:
        """Execute a query with error handling.

        The ``fetch``/``fetch_one``/``fetch_val`` flags control how results
        are retrieved. All failures are wrapped in ``VectorStoreQueryError``.
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                if fetch_val:
                    return await conn.fetchval(query, *args)
                if fetch_one:
                    return await conn.fetchrow(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except Exception as e:
            logger.error("Query execution failed", query=query, error=str(e))
            raise VectorStoreQueryError(f"Query failed: {e}", "query") from e

    async def setup_extension(self) -> None:
        """Enable the pgvector extension (requires superuser privileges)."""
        await self._execute_query("CREATE EXTENSION IF NOT EXISTS vector")

    async def search(
        self,
        vector: np.ndarray,
        collection: str,
        limit: int = 10,
        filters: Optional[Mapping[str, Any]] = None
    ) -> List[SearchHit]:
        """Search for similar vectors using cosine similarity.

        Filters match stored metadata by its jsonb text; list values
        match any element and array fields match any of their elements.
        """
        vector_array = self._ensure_vector_dimension(vector)

        conditions = ["collection = $2"]
        args: List[Any] = [vector_array, collection]
        for field_name, value in (filters or {}).items():
            args.append(field_name)
            key_param = len(args)
            args.append(filter_values(value))
            conditions.append(metadata_filter_sql(key_param, len(args)))
        args.append(limit)

        query = f"""
            SELECT id, metadata, 1 - (vector <=> $1) AS similarity
            FROM {self.table}
            WHERE {" AND ".join(conditions)}
            ORDER BY vector <=> $1
            LIMIT ${len(args)}
        """

        rows = await self._execute_query(query, *args, fetch=True)

        hits = []
        for row in rows:
            metadata = self._decode_metadata(row["metadata"])
            hits.append(SearchHit(
                id=row["id"],
                document={**metadata, "id": row["id"]},
                score=float(row["similarity"]),
                source=HitSource.SEMANTIC,
            ))

        logger.info(
            "Vector similarity search completed",
            collection=collection,
            query_vector_dim=len(vector_array),
            limit=limit,
            results_count=len(hits)
        )

        return hits

    async def store_batch(self, records: Sequence[VectorRecord], collection: str) -> int:
        """Upsert vectors in a single transaction."""
        if not records:
            return 0

        batch_data = [
            (doc_id, collection, self._ensure_vector_dimension(vector), json.dumps(dict(metadata), default=str))
            for doc_id, vector, metadata in records
        ]

        query = f"""
            INSERT INTO {self.table} (id, collection, vector, metadata, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            ON CONFLICT (id, collection)
            DO UPDATE SET
                vector = EXCLUDED.vector,
                metadata = EXCLUDED.metadata,
                updated_at = CURRENT_TIMESTAMP
        """

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(query, batch_data)
        except Exception as e:
            logger.error("Batch store vectors failed", collection=collection, count=len(batch_data), error=str(e))
            raise VectorStoreQueryError(f"Failed to store vectors: {e}", "store_batch") from e

        logger.info("Batch stored vectors", collection=collection, count=len(batch_data))
        return len(batch_data)

    async def delete_batch(self, ids: Sequence[str], collection: str) -> int:
        if not ids:
            return 0

        result = await self._execute_query(
            f"DELETE FROM {self.table} WHERE collection = $1 AND id = ANY($2::text[])",
            collection,
            list(ids),
        )
        deleted = int(result.split()[-1])

        logger.info("Deleted vectors", collection=collection, requested=len(ids), deleted=deleted)
        return deleted

    async def create_collection(self, collection: str, dimension: int) -> None:
        """Create the shared table and its HNSW index when missing.

        Collections are implicit rows of the shared table, so a collection
        only reports as existing once it holds vectors.
        """
        await self._execute_query(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id TEXT NOT NULL,
                collection TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                vector vector({int(dimension)}),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (id, collection)
            )
        """)
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {self.table}_collection_idx ON {self.table} (collection)"
        )
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {self.table}_vector_idx ON {self.table} USING hnsw (vector vector_cosine_ops)"
        )

        logger.info("Vector collection ready", collection=collection, dimension=dimension)

    async def delete_collection(self, collection: str) -> None:
        await self._execute_query(f"DELETE FROM {self.table} WHERE collection = $1", collection)
        logger.info("Deleted vector collection", collection=collection)

    async def collection_exists(self, collection: str) -> bool:
        try:
            return bool(await self._execute_query(
                f"SELECT EXISTS(SELECT 1 FROM {self.table} WHERE collection = $1)",
                collection,
                fetch_val=True,
            ))
        except VectorStoreQueryError:
            return False

    async def collection_stats(self, collection: str) -> Dict[str, Any]:
        row = await self._execute_query(
            f"""
            SELECT COUNT(*) AS total_vectors,
                   MIN(created_at) AS oldest_vector,
                   MAX(updated_at) AS newest_vector
            FROM {self.table}
            WHERE collection = $1
            """,
            collection,
            fetch_one=True,
        )

        return {
            "collection": collection,
            "total_vectors": int(row["total_vectors"]) if row else 0,
            "oldest_vector": row["oldest_vector"] if row else None,
            "newest_vector": row["newest_vector"] if row else None,
        }

    async def health_check(self) -> bool:
        """Check if the vector store is healthy."""
        try:
            await self._execute_query("SELECT 1", fetch_one=True)
            return True
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed PgVector connection pool")

    @staticmethod
    def _decode_metadata(value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) or {}
        return dict(value)

    def _ensure_vector_dimension(self, vector: Iterable[float]) -> np.ndarray:
        """Ensure a vector matches the expected dimensionality."""
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise ValueError("Vector must be one-dimensional")

        if self.vector_dimension is not None and array.shape[0] != self.vector_dimension:
            raise ValueError(
                f"Expected vector dimension {self.vector_dimension}, "
                f"got {array.shape[0]}"
            )
        return array
