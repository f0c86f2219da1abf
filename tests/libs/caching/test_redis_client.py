"""
Tests for the Redis client manager.

Tests verify:
- fakeredis is used in the test environment
- The client is a singleton until reset
- Missing REDIS_URL disables Redis-backed stores
"""

import pytest

from libs.caching import redis_client as redis_client_module
from libs.caching.redis_client import get_redis_client, health_check, reset_redis_client


@pytest.fixture(autouse=True)
async def fresh_client():
    await reset_redis_client()
    yield
    await reset_redis_client()


@pytest.mark.asyncio
async def test_fake_client_in_test_env():
    client = await get_redis_client()

    assert client is not None
    assert await client.ping() is True
    assert await get_redis_client() is client
    assert await health_check() is True


@pytest.mark.asyncio
async def test_missing_url_disables_redis(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)

    assert await get_redis_client(use_fake=False) is None
    assert redis_client_module._connection_failed is True
