"""
Tests for the OpenAI embedding client.

Tests verify:
- Batch responses are reordered by index
- Non-200 responses and malformed bodies raise ProviderRejected
- A missing API key is rejected before any request
"""

import httpx
import pytest

from insight.tools.embedding_client import OpenAIEmbeddingClient
from libs.common.errors import ProviderRejected


def make_client(handler, api_key="test-key"):
    return OpenAIEmbeddingClient(api_key=api_key, model="test-model", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_batch_embeddings_ordered_by_index():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer test-key"
        return httpx.Response(
            200,
            json={
                "model": "test-model",
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ],
                "usage": {"total_tokens": 10},
            },
        )

    results = await make_client(handler).create_batch_embeddings(["first", "second"])

    assert [r.embedding for r in results] == [[1.0, 0.0], [0.0, 1.0]]
    assert results[0].total_tokens == 5


@pytest.mark.asyncio
async def test_empty_batch_makes_no_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert await make_client(handler).create_batch_embeddings([]) == []


@pytest.mark.asyncio
async def test_http_error_is_rejected():
    client = make_client(lambda request: httpx.Response(429, text="rate limited"))

    with pytest.raises(ProviderRejected):
        await client.create_embedding("text")


@pytest.mark.asyncio
async def test_wrong_count_is_rejected():
    client = make_client(lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]}))

    with pytest.raises(ProviderRejected):
        await client.create_batch_embeddings(["a", "b"])


@pytest.mark.asyncio
async def test_missing_api_key():
    client = make_client(lambda request: httpx.Response(200, json={}), api_key="")

    with pytest.raises(ProviderRejected):
        await client.create_embedding("text")
