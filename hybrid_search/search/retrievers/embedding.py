"""HTTP client for the embedding service.

The service exposes ``POST {base_url}/api/v1/embed`` taking
``{"items": [{"text": ...}], "model": ...}`` and answering with
``{"vectors": [[...], ...]}`` in request order.

Transport errors, ``429`` and ``5xx`` responses are retried with exponential
backoff; other ``4xx`` responses fail immediately.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
import structlog

from ...errors import EmbeddingError
from .base import EmbeddingProvider

logger = structlog.get_logger("search_service.embedding")


class NonRetryableEmbeddingError(EmbeddingError):
    """Embedding service rejected the request."""

    def __init__(self, message: str):
        super().__init__(message, "embed")


class HttpEmbeddingProvider(EmbeddingProvider):
    """``EmbeddingProvider`` backed by the embedding HTTP service."""

    def __init__(
        self,
        base_url: str,
        model: str = "default",
        dimension: int = 384,
        max_input_length: int = 512,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._dimension = dimension
        self._max_input_length = max_input_length
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return f"http:{self.model}"

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def max_input_length(self) -> int:
        return self._max_input_length

    def _prepare(self, text: str) -> str:
        return text[:self._max_input_length]

    async def _post_embed(self, payload: Dict[str, Any]) -> httpx.Response:
        """POST with retry; raises the last error once attempts are exhausted."""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = await self.http_client.post(f"{self.base_url}/api/v1/embed", json=payload)
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    status = exc.response.status_code
                    if status >= 500 or status == 429:
                        raise
                    raise NonRetryableEmbeddingError(f"Embedding service returned status {status}") from exc
                return response

            except NonRetryableEmbeddingError as non_retryable:
                logger.error(
                    "Embedding service returned non-retryable error",
                    attempt=attempt,
                    error=str(non_retryable),
                )
                raise
            except Exception as exc:
                last_error = exc
                if attempt >= self.retry_attempts:
                    logger.error(
                        "Embedding service call failed after retries",
                        attempts=attempt,
                        error=str(exc),
                    )
                    break

                delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
                logger.warning(
                    "Embedding service call failed, retrying",
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        raise EmbeddingError(f"Embedding service call failed: {last_error}", "embed") from last_error

    def _to_vector(self, values: Any) -> np.ndarray:
        vector = np.asarray(values, dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self._dimension:
            raise EmbeddingError(
                f"Expected vector dimension {self._dimension}, got shape {vector.shape}",
                "embed",
            )
        return vector

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        if not texts:
            return []

        payload = {
            "items": [{"text": self._prepare(text)} for text in texts],
            "model": self.model,
        }
        response = await self._post_embed(payload)

        try:
            vectors = response.json().get("vectors", [])
        except ValueError as e:
            raise EmbeddingError(f"Invalid embedding response: {e}", "embed") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs",
                "embed",
            )

        logger.debug("Embeddings generated", count=len(vectors), model=self.model)
        return [self._to_vector(values) for values in vectors]

    async def embed(self, text: str) -> np.ndarray:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def is_available(self) -> bool:
        try:
            response = await self.http_client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Embedding service unavailable", error=str(e))
            return False

    async def close(self) -> None:
        await self.http_client.aclose()
