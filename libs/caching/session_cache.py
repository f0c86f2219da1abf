"""
Session cache contract and its in-process implementation.

One capability interface, two interchangeable stores:
- ``InMemorySessionCache``: local dict with an explicit expiry sweep
- ``RedisSessionCache`` (libs.caching.redis_session_cache): native TTL

An entry expires once ``now - last_accessed > ttl``. Reads never refresh
``last_accessed``; only ``set`` does, when a new turn is stored.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from insight.schemas.analysis import SessionCacheEntry, utcnow

logger = structlog.get_logger(__name__)


class SessionCachePort(ABC):
    """Keyed store of per-session conversation state."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionCacheEntry]:
        ...

    @abstractmethod
    async def set(self, session_id: str, entry: SessionCacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session; True when something was removed."""

    @abstractmethod
    async def entries(self) -> List[Tuple[str, SessionCacheEntry]]:
        ...

    @abstractmethod
    async def values(self) -> List[SessionCacheEntry]:
        ...

    @abstractmethod
    async def size(self) -> int:
        """Point-in-time count; may be stale under concurrent writes."""

    @abstractmethod
    async def cleanup_expired_sessions(self) -> int:
        """Remove every expired entry and return how many were removed."""


class InMemorySessionCache(SessionCachePort):
    """
    Session cache for a single process.

    Every mutation happens under one lock, and the expiry sweep checks and
    removes each entry atomically, so a ``set`` that refreshes an entry is
    never undone by a sweep that looked at the entry before the refresh.

    Usage:
        cache = InMemorySessionCache()
        await cache.set("s1", SessionCacheEntry(ttl_seconds=1800))
        entry = await cache.get("s1")
        removed = await cache.cleanup_expired_sessions()
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: Dict[str, SessionCacheEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, session_id: str) -> Optional[SessionCacheEntry]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry.snapshot()

    async def set(self, session_id: str, entry: SessionCacheEntry) -> None:
        async with self._lock:
            self._entries[session_id] = entry.snapshot()

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(session_id, None) is not None

    async def entries(self) -> List[Tuple[str, SessionCacheEntry]]:
        return [(session_id, entry.snapshot()) for session_id, entry in list(self._entries.items())]

    async def values(self) -> List[SessionCacheEntry]:
        return [entry.snapshot() for entry in list(self._entries.values())]

    async def size(self) -> int:
        return len(self._entries)

    async def cleanup_expired_sessions(self) -> int:
        removed = 0
        for session_id in list(self._entries.keys()):
            async with self._lock:
                entry = self._entries.get(session_id)
                if entry is not None and entry.is_expired(self._clock()):
                    del self._entries[session_id]
                    removed += 1

        if removed:
            logger.info("Expired sessions removed", removed=removed, remaining=len(self._entries))
        return removed
