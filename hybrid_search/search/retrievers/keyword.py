"""PostgreSQL full-text keyword engine.

Documents are stored in a single table (default ``search_index``) keyed by
``(document_id, index_name)``. The searchable text is kept in ``content``
with a ``tsvector`` column for ``ts_rank`` scoring; the full document is kept
as ``jsonb`` metadata so filters and hits see every field.

Matching is deliberately loose: a row matches when any query term hits the
full-text vector or appears (case-insensitively) in the title or content.
"""

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg
import structlog
from asyncpg import Pool

from ...common.filters import filter_values, metadata_filter_sql
from ...errors import KeywordEngineError
from ..models import HitSource, SearchHit, SearchQuery
from .base import KeywordEngine

logger = structlog.get_logger("search_service.keyword")

DEFAULT_SEARCHABLE_FIELDS = ("title", "content", "description")
SORTABLE_COLUMNS = {"document_id", "title", "created_at", "updated_at"}
SNIPPET_LENGTH = 200


def parse_search_terms(query: str) -> List[str]:
    """Lowercased whitespace tokens longer than two characters."""
    return [term for term in (t.strip() for t in query.lower().split(" ")) if len(term) > 2]


def extract_content(document: Mapping[str, Any], fields: Sequence[str]) -> str:
    """Concatenate the non-empty searchable fields of a document."""
    return " ".join(str(document[field_name]) for field_name in fields if document.get(field_name))


def extract_snippet(content: str, term: str, snippet_length: int = SNIPPET_LENGTH) -> str:
    position = content.lower().find(term.lower())
    if position < 0:
        return content[:snippet_length] + "..."

    start = max(0, position - snippet_length // 2)
    snippet = content[start:start + snippet_length]

    if start > 0:
        snippet = "..." + snippet
    if len(content) > start + snippet_length:
        snippet += "..."

    return snippet


def generate_highlights(content: str, terms: Sequence[str]) -> Tuple[str, ...]:
    """``<mark>``-wrapped snippets, one per matching term, deduplicated."""
    highlights: List[str] = []

    for term in terms:
        pattern = re.compile(r"\b" + re.escape(term) + r"\b", re.IGNORECASE)
        highlighted = pattern.sub(f"<mark>{term}</mark>", content)
        if highlighted != content:
            snippet = extract_snippet(highlighted, term)
            if snippet not in highlights:
                highlights.append(snippet)

    return tuple(highlights)


class PostgresKeywordEngine(KeywordEngine):
    """``KeywordEngine`` over PostgreSQL full-text search."""

    def __init__(
        self,
        dsn: str,
        table: str = "search_index",
        pool_size: int = 10,
        command_timeout: int = 60,
        searchable_fields: Sequence[str] = DEFAULT_SEARCHABLE_FIELDS,
        text_search_config: str = "english",
    ):
        """Configure the engine.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - table: Table holding documents of every index
        - searchable_fields: Document fields concatenated into ``content``
        - text_search_config: PostgreSQL text search configuration name
        """
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        if not text_search_config.isalpha():
            raise ValueError(f"Invalid text search configuration: {text_search_config}")

        self.dsn = dsn
        self.table = table
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.searchable_fields = tuple(searchable_fields)
        self.text_search_config = text_search_config
        self._pool: Optional[Pool] = None

    @property
    def name(self) -> str:
        return "postgresql-fulltext"

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
                logger.info("Created keyword engine connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create keyword engine connection pool", error=str(e))
                raise KeywordEngineError(f"Failed to create connection pool: {e}", "connect") from e

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False,
        fetch_val: bool = False,
        operation: str = "query"
    ) -> Any:
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
            logger.error("Keyword query failed", operation=operation, error=str(e))
            raise KeywordEngineError(f"{operation} failed: {e}", operation) from e

    def build_search_sql(self, query: SearchQuery) -> Tuple[str, List[Any]]:
        """SQL and parameters for ``query``; exposed for inspection in tests."""
        terms = parse_search_terms(query.query)
        args: List[Any] = [query.index]
        conditions = ["index_name = $1"]

        if terms:
            term_conditions = []
            for term in terms:
                args.append(term)
                term_param = len(args)
                args.append(f"%{term}%")
                like_param = len(args)
                term_conditions.append(
                    f"content_vector @@ plainto_tsquery('{self.text_search_config}', ${term_param})"
                    f" OR title ILIKE ${like_param} OR content ILIKE ${like_param}"
                )
            conditions.append("(" + " OR ".join(term_conditions) + ")")

        for field_name, value in query.filters.items():
            args.append(field_name)
            key_param = len(args)
            args.append(filter_values(value))
            conditions.append(metadata_filter_sql(key_param, len(args)))

        if terms:
            args.append(" ".join(terms))
            score_sql = f"ts_rank(content_vector, plainto_tsquery('{self.text_search_config}', ${len(args)}))"
        else:
            score_sql = "1.0"

        order_clauses = []
        for field_name, direction in query.sort_by.items():
            direction_sql = "DESC" if str(direction).lower() == "desc" else "ASC"
            if field_name in SORTABLE_COLUMNS:
                order_clauses.append(f"{field_name} {direction_sql}")
            else:
                args.append(field_name)
                order_clauses.append(f"metadata ->> ${len(args)} {direction_sql}")
        if not order_clauses:
            order_clauses.append("relevance_score DESC" if terms else "updated_at DESC")

        args.append(query.offset)
        offset_param = len(args)
        args.append(query.limit)
        limit_param = len(args)

        sql = f"""
            SELECT document_id, title, content, metadata, {score_sql} AS relevance_score
            FROM {self.table}
            WHERE {" AND ".join(conditions)}
            ORDER BY {", ".join(order_clauses)}
            OFFSET ${offset_param}
            LIMIT ${limit_param}
        """
        return sql, args

    async def search(self, query: SearchQuery) -> List[SearchHit]:
        sql, args = self.build_search_sql(query)
        rows = await self._execute_query(sql, *args, fetch=True, operation="search")

        terms = parse_search_terms(query.query)
        hits = []
        for row in rows:
            metadata = self._decode_metadata(row["metadata"])
            document = {
                **metadata,
                "id": row["document_id"],
                "title": row["title"],
                "content": row["content"],
            }

            if query.highlight_fields:
                text = " ".join(str(document.get(f) or "") for f in query.highlight_fields)
            else:
                text = row["content"] or ""

            hits.append(SearchHit(
                id=row["document_id"],
                document=document,
                score=float(row["relevance_score"] if row["relevance_score"] is not None else 1.0),
                highlights=generate_highlights(text, terms),
                source=HitSource.KEYWORD,
            ))

        logger.info("Keyword search completed", index=query.index, results_count=len(hits))
        return hits

    async def index_batch(self, documents: Mapping[str, Mapping[str, Any]], index: str) -> int:
        if not documents:
            return 0

        batch_data = [
            (
                doc_id,
                index,
                str(document.get("title") or ""),
                extract_content(document, self.searchable_fields),
                json.dumps(dict(document), default=str),
            )
            for doc_id, document in documents.items()
        ]

        query = f"""
            INSERT INTO {self.table} (document_id, index_name, title, content, content_vector, metadata, created_at, updated_at)
            VALUES ($1, $2, $3, $4, to_tsvector('{self.text_search_config}', $4), $5::jsonb, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
            ON CONFLICT (document_id, index_name)
            DO UPDATE SET
                title = EXCLUDED.title,
                content = EXCLUDED.content,
                content_vector = EXCLUDED.content_vector,
                metadata = EXCLUDED.metadata,
                updated_at = CURRENT_TIMESTAMP
        """

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(query, batch_data)
        except Exception as e:
            logger.error("Failed to index documents", index=index, count=len(batch_data), error=str(e))
            raise KeywordEngineError(f"Failed to index documents: {e}", "index_batch") from e

        logger.info("Indexed documents", index=index, count=len(batch_data))
        return len(batch_data)

    async def remove_batch(self, ids: Sequence[str], index: str) -> int:
        if not ids:
            return 0

        result = await self._execute_query(
            f"DELETE FROM {self.table} WHERE index_name = $1 AND document_id = ANY($2::text[])",
            index,
            list(ids),
            operation="remove_batch",
        )
        return int(result.split()[-1])

    async def clear_index(self, index: str) -> None:
        await self._execute_query(
            f"DELETE FROM {self.table} WHERE index_name = $1",
            index,
            operation="clear_index",
        )
        logger.info("Cleared keyword index", index=index)

    async def create_index(self, index: str, settings: Optional[Mapping[str, Any]] = None) -> None:
        """Create the shared documents table and its GIN index when missing."""
        await self._execute_query(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                document_id TEXT NOT NULL,
                index_name TEXT NOT NULL,
                title TEXT,
                content TEXT NOT NULL DEFAULT '',
                content_vector TSVECTOR,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (document_id, index_name)
            )
        """, operation="create_index")
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {self.table}_index_name_idx ON {self.table} (index_name)",
            operation="create_index",
        )
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {self.table}_content_vector_idx ON {self.table} USING GIN (content_vector)",
            operation="create_index",
        )

        logger.info("Keyword index ready", index=index)

    async def delete_index(self, index: str) -> None:
        await self.clear_index(index)

    async def index_exists(self, index: str) -> bool:
        try:
            return bool(await self._execute_query(
                f"SELECT EXISTS(SELECT 1 FROM {self.table} WHERE index_name = $1)",
                index,
                fetch_val=True,
                operation="index_exists",
            ))
        except KeywordEngineError:
            return False

    async def index_stats(self, index: str) -> Dict[str, Any]:
        row = await self._execute_query(
            f"""
            SELECT COUNT(*) AS total_documents,
                   MIN(created_at) AS oldest_document,
                   MAX(updated_at) AS newest_document
            FROM {self.table}
            WHERE index_name = $1
            """,
            index,
            fetch_one=True,
            operation="index_stats",
        )

        return {
            "index_name": index,
            "total_documents": int(row["total_documents"]) if row else 0,
            "oldest_document": row["oldest_document"] if row else None,
            "newest_document": row["newest_document"] if row else None,
        }

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_val=True, operation="health_check")
            return True
        except KeywordEngineError as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed keyword engine connection pool")

    @staticmethod
    def _decode_metadata(value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) or {}
        return dict(value)
