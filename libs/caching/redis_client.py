"""
Redis client manager shared by the session store, chat history and log store.

Provides:
- Async Redis client with connection pooling
- Singleton pattern for resource efficiency
- fakeredis in the test environment
- Graceful degradation (None when Redis is not configured or unreachable)
"""

import os
from typing import Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_connection_failed = False  # Circuit breaker for repeated failures


def _redacted(redis_url: str) -> str:
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def get_redis_client(use_fake: Optional[bool] = None) -> Optional[redis.Redis]:
    """
    Get or create async Redis client with connection pooling.

    Args:
        use_fake: If True, use fakeredis. If None, auto-detect from INSIGHT_APP_ENV.

    Returns:
        Redis client instance or None if Redis is unavailable
    """
    global _redis_client, _connection_failed

    if use_fake is None:
        use_fake = os.getenv("INSIGHT_APP_ENV") == "test"

    if use_fake:
        from fakeredis import aioredis as fakeredis

        if _redis_client is None:
            _redis_client = fakeredis.FakeRedis(decode_responses=True)
            logger.info("Using fakeredis for testing")
        return _redis_client

    if _connection_failed:
        logger.warning("Redis connection previously failed, skipping reconnect attempt")
        return None

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            return _redis_client
        except redis.RedisError as e:
            logger.warning("Existing Redis connection failed, reconnecting", error=str(e))
            _redis_client = None

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        logger.warning(
            "REDIS_URL not configured, Redis-backed stores are disabled",
            hint="Set REDIS_URL environment variable to enable them",
        )
        _connection_failed = True
        return None

    try:
        _redis_client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await _redis_client.ping()

        logger.info("Redis client initialized successfully", url=_redacted(redis_url), max_connections=20)
        return _redis_client

    except redis.RedisError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redacted(redis_url),
            hint="Check REDIS_URL and ensure Redis server is running",
        )
        _redis_client = None
        _connection_failed = True
        return None


async def close_redis_client() -> None:
    """Close Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except redis.RedisError as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None


async def reset_redis_client() -> None:
    """Reset Redis client (for testing or after connection failures)."""
    global _redis_client, _connection_failed

    await close_redis_client()
    _connection_failed = False
    logger.info("Redis client reset")


async def health_check() -> bool:
    """Return True when Redis answers a ping."""
    try:
        redis_client = await get_redis_client()
        if redis_client is None:
            return False
        return await redis_client.ping() is True
    except redis.RedisError as e:
        logger.error("Redis health check failed", error=str(e))
        return False
