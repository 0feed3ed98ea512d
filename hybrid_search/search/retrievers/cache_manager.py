"""Redis cache for search results and query embeddings."""

import hashlib
import json
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from ...errors import CacheError
from .base import SearchCache

logger = structlog.get_logger("search_service.cache")


def generate_cache_key(prefix: str, data: Any) -> str:
    """Cache key from data; dicts are hashed in key-sorted JSON form."""
    if isinstance(data, dict):
        # Sort keys for consistent hashing
        serialized = json.dumps(data, sort_keys=True, default=str)
    else:
        serialized = str(data)

    hash_obj = hashlib.md5(serialized.encode())
    return f"{prefix}{hash_obj.hexdigest()}"


class RedisSearchCache(SearchCache):
    """``SearchCache`` backed by Redis.

    Every key is stored under ``{namespace}:`` so the namespace can be
    flushed without touching unrelated keys in the same database.
    """

    def __init__(self, redis_url: str, namespace: str = "hybrid_search", scan_count: int = 500):
        self.redis_client = redis.from_url(redis_url)
        self.namespace = namespace
        self.scan_count = scan_count

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            cached_data = await self.redis_client.get(self._key(key))
        except Exception as e:
            logger.warning("Failed to read cache entry", key=key, error=str(e))
            raise CacheError(f"Failed to read cache entry: {e}", "get") from e

        if cached_data is None:
            return None

        try:
            return json.loads(cached_data)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.redis_client.setex(self._key(key), ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.warning("Failed to write cache entry", key=key, error=str(e))
            raise CacheError(f"Failed to write cache entry: {e}", "set") from e

    async def invalidate_all(self) -> int:
        """Delete every key in the namespace using ``SCAN`` batches."""
        pattern = f"{self.namespace}:*"
        total_deleted = 0
        batch = []

        try:
            async for key in self.redis_client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    total_deleted += await self.redis_client.delete(*batch)
                    batch = []
            if batch:
                total_deleted += await self.redis_client.delete(*batch)
        except Exception as e:
            logger.error("Failed to clear cache", namespace=self.namespace, error=str(e))
            raise CacheError(f"Failed to clear cache: {e}", "invalidate_all") from e

        logger.info("Cache cleared", namespace=self.namespace, keys_deleted=total_deleted)
        return total_deleted

    async def close(self) -> None:
        """Close Redis connection."""
        await self.redis_client.close()
        logger.info("Search cache closed")
