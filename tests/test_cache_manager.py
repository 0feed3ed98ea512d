"""Tests for the Redis search cache."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hybrid_search.errors import CacheError
from hybrid_search.search.retrievers.cache_manager import RedisSearchCache, generate_cache_key


async def scan_results(keys):
    for key in keys:
        yield key


@pytest.fixture
def redis_client():
    with patch("hybrid_search.search.retrievers.cache_manager.redis.from_url") as from_url:
        client = AsyncMock()
        from_url.return_value = client
        yield client


@pytest.fixture
def cache(redis_client):
    return RedisSearchCache("redis://localhost:6379", namespace="test", scan_count=2)


def test_generate_cache_key_is_order_independent():
    first = generate_cache_key("search:", {"query": "q", "limit": 10})
    second = generate_cache_key("search:", {"limit": 10, "query": "q"})

    assert first == second
    assert first.startswith("search:")
    assert len(first) == len("search:") + 32


def test_generate_cache_key_distinguishes_values():
    assert generate_cache_key("search:", {"query": "a"}) != generate_cache_key("search:", {"query": "b"})
    assert generate_cache_key("embedding:", "hello") != generate_cache_key("search:", "hello")


@pytest.mark.asyncio
async def test_get_decodes_namespaced_entry(cache, redis_client):
    redis_client.get.return_value = json.dumps({"total": 3}).encode()

    assert await cache.get("search:abc") == {"total": 3}
    redis_client.get.assert_awaited_once_with("test:search:abc")


@pytest.mark.asyncio
async def test_get_miss_returns_none(cache, redis_client):
    redis_client.get.return_value = None

    assert await cache.get("search:abc") is None


@pytest.mark.asyncio
async def test_undecodable_entry_is_treated_as_miss(cache, redis_client):
    redis_client.get.return_value = b"not json"

    assert await cache.get("search:abc") is None


@pytest.mark.asyncio
async def test_set_uses_ttl(cache, redis_client):
    await cache.set("search:abc", {"total": 3}, 60)

    key, ttl, payload = redis_client.setex.call_args.args
    assert key == "test:search:abc"
    assert ttl == 60
    assert json.loads(payload) == {"total": 3}


@pytest.mark.asyncio
async def test_failures_raise_cache_error(cache, redis_client):
    redis_client.get.side_effect = ConnectionError("refused")
    redis_client.setex.side_effect = ConnectionError("refused")

    with pytest.raises(CacheError):
        await cache.get("search:abc")
    with pytest.raises(CacheError) as exc_info:
        await cache.set("search:abc", {}, 60)

    assert exc_info.value.collaborator == "cache"
    assert exc_info.value.operation == "set"


@pytest.mark.asyncio
async def test_invalidate_all_deletes_in_batches(cache, redis_client):
    redis_client.scan_iter = MagicMock(return_value=scan_results([b"test:1", b"test:2", b"test:3"]))
    redis_client.delete.side_effect = lambda *keys: len(keys)

    removed = await cache.invalidate_all()

    assert removed == 3
    redis_client.scan_iter.assert_called_once_with(match="test:*", count=2)
    assert [call.args for call in redis_client.delete.call_args_list] == [
        (b"test:1", b"test:2"),
        (b"test:3",),
    ]


@pytest.mark.asyncio
async def test_invalidate_empty_namespace(cache, redis_client):
    redis_client.scan_iter = MagicMock(return_value=scan_results([]))

    assert await cache.invalidate_all() == 0
    redis_client.delete.assert_not_called()


@pytest.mark.asyncio
async def test_close(cache, redis_client):
    await cache.close()

    redis_client.close.assert_awaited_once()
