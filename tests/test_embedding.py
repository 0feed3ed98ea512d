"""Tests for the HTTP embedding provider."""

import json

import httpx
import numpy as np
import pytest

from hybrid_search.errors import EmbeddingError
from hybrid_search.search.retrievers.embedding import HttpEmbeddingProvider, NonRetryableEmbeddingError


def make_provider(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = {"dimension": 3, "retry_base_delay": 0.0}
    options.update(kwargs)
    return HttpEmbeddingProvider("http://embedding:9006/", http_client=client, **options)


def vectors_for(request):
    items = json.loads(request.content)["items"]
    return {"vectors": [[float(len(item["text"])), 0.0, 1.0] for item in items]}


@pytest.mark.asyncio
async def test_embed_batch_posts_items_in_order():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=vectors_for(request))

    provider = make_provider(handler, model="minilm")
    vectors = await provider.embed_batch(["a", "abcd"])

    assert str(requests[0].url) == "http://embedding:9006/api/v1/embed"
    assert json.loads(requests[0].content) == {"items": [{"text": "a"}, {"text": "abcd"}], "model": "minilm"}
    assert [vector[0] for vector in vectors] == [1.0, 4.0]
    assert all(vector.dtype == np.float32 for vector in vectors)


@pytest.mark.asyncio
async def test_embed_truncates_long_input():
    def handler(request):
        return httpx.Response(200, json=vectors_for(request))

    provider = make_provider(handler, max_input_length=5)
    vector = await provider.embed("a very long query")

    assert vector[0] == 5.0


@pytest.mark.asyncio
async def test_empty_batch_makes_no_request():
    def handler(request):
        raise AssertionError("unexpected request")

    assert await make_provider(handler).embed_batch([]) == []


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=vectors_for(request))

    provider = make_provider(handler, retry_attempts=3)
    vector = await provider.embed("abc")

    assert len(attempts) == 3
    assert vector[0] == 3.0


@pytest.mark.asyncio
async def test_retries_exhausted_raise_embedding_error():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    provider = make_provider(handler, retry_attempts=2)

    with pytest.raises(EmbeddingError) as exc_info:
        await provider.embed("abc")

    assert len(attempts) == 2
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(422, json={"detail": "bad input"})

    provider = make_provider(handler, retry_attempts=3)

    with pytest.raises(NonRetryableEmbeddingError):
        await provider.embed("abc")

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(429)
        return httpx.Response(200, json=vectors_for(request))

    await make_provider(handler).embed("abc")

    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_wrong_dimension_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"vectors": [[1.0, 2.0]]})

    with pytest.raises(EmbeddingError, match="dimension"):
        await make_provider(handler).embed("abc")


@pytest.mark.asyncio
async def test_vector_count_mismatch_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"vectors": []})

    with pytest.raises(EmbeddingError):
        await make_provider(handler).embed_batch(["a", "b"])


@pytest.mark.asyncio
async def test_is_available():
    def healthy(request):
        return httpx.Response(200, json={"status": "ok"})

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await make_provider(healthy).is_available() is True
    assert await make_provider(unreachable).is_available() is False


def test_provider_properties():
    provider = HttpEmbeddingProvider("http://embedding:9006", model="minilm", dimension=768, max_input_length=256)

    assert provider.name == "http:minilm"
    assert provider.dimension == 768
    assert provider.max_input_length == 256
