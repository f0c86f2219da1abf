"""
Redis-backed session cache.

Entries are stored as JSON under ``session:{id}`` with a native TTL, so
Redis expires idle sessions itself and ``cleanup_expired_sessions`` has
nothing to do. Connection problems surface as ``CacheUnavailable``.
"""

from __future__ import annotations

import math
from typing import List, Optional, Tuple

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from insight.schemas.analysis import SessionCacheEntry
from libs.caching.session_cache import SessionCachePort
from libs.common.errors import CacheUnavailable

logger = structlog.get_logger(__name__)

KEY_PREFIX = "session:"
SCAN_COUNT = 100


class RedisSessionCache(SessionCachePort):
    """
    Session cache shared across instances.

    Usage:
        cache = RedisSessionCache(await get_redis_client())
        await cache.set("s1", entry)
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    async def get(self, session_id: str) -> Optional[SessionCacheEntry]:
        try:
            raw = await self.redis.get(self._key(session_id))
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to read session {session_id}: {e}") from e

        if raw is None:
            return None
        try:
            return SessionCacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable session entry", session_id=session_id, error=str(e))
            return None

    async def set(self, session_id: str, entry: SessionCacheEntry) -> None:
        ttl = max(1, math.ceil(entry.ttl_seconds))
        try:
            await self.redis.setex(self._key(session_id), ttl, entry.model_dump_json())
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to write session {session_id}: {e}") from e

        logger.debug("Session stored", session_id=session_id, turns=len(entry.history), ttl_s=ttl)

    async def delete(self, session_id: str) -> bool:
        try:
            return await self.redis.delete(self._key(session_id)) > 0
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to delete session {session_id}: {e}") from e

    async def _keys(self) -> List[str]:
        try:
            return [key async for key in self.redis.scan_iter(match=f"{KEY_PREFIX}*", count=SCAN_COUNT)]
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to scan sessions: {e}") from e

    async def entries(self) -> List[Tuple[str, SessionCacheEntry]]:
        result = []
        for key in await self._keys():
            session_id = key[len(KEY_PREFIX):]
            entry = await self.get(session_id)
            # The key may have expired between SCAN and GET
            if entry is not None:
                result.append((session_id, entry))
        return result

    async def values(self) -> List[SessionCacheEntry]:
        return [entry for _, entry in await self.entries()]

    async def size(self) -> int:
        return len(await self._keys())

    async def cleanup_expired_sessions(self) -> int:
        # Redis expires keys on its own
        return 0
