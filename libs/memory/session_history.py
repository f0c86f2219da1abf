"""
Session history for active conversations.

Stores the answered turns of each session in the session cache for fast
access during a conversation:
- Cache-first reads, falling back to the durable chat history on a miss
- Append-on-answer with a fresh last-accessed time
- Periodic sweep of expired sessions for stores without native TTL
- Cache statistics for monitoring
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import structlog

from insight.ports import ChatHistoryPort
from insight.schemas.analysis import AnalysisResult, SessionCacheEntry, utcnow
from libs.caching.session_cache import SessionCachePort
from libs.common.errors import CacheUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


@dataclass
class SessionCacheStats:
    active_sessions: int = 0
    total_messages: int = 0


class SessionHistoryService:
    """
    Manages conversation history per session.

    Usage:
        sessions = SessionHistoryService(InMemorySessionCache(), chat_history)
        history = await sessions.get_history("s1")
        await sessions.update_session("s1", result)
    """

    def __init__(
        self,
        cache: SessionCachePort,
        chat_history: Optional[ChatHistoryPort] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        cleanup_interval_seconds: float = 300.0,
    ):
        self.cache = cache
        self.chat_history = chat_history
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None

    async def get_history(self, session_id: str) -> List[AnalysisResult]:
        """
        Get the stored (uncompressed) history of a session.

        Raises:
            CacheUnavailable: The session cache cannot be reached
        """
        entry = await self.cache.get(session_id)
        if entry is not None:
            logger.debug("Session cache hit", session_id=session_id, turns=len(entry.history))
            return list(entry.history)

        if self.chat_history is None:
            return []

        history = await self.chat_history.find_by_session_id(session_id)
        if history:
            await self.cache.set(
                session_id,
                SessionCacheEntry(history=history, last_accessed=utcnow(), ttl_seconds=self.ttl_seconds),
            )
            logger.debug("Session restored from chat history", session_id=session_id, turns=len(history))
        return history

    async def update_session(self, session_id: str, result: AnalysisResult) -> None:
        """
        Append a turn to the session and persist it.

        Concurrent updates of the same session are last-write-wins.
        """
        if self.chat_history is not None:
            await self.chat_history.save(result)

        entry = await self.cache.get(session_id)
        if entry is None:
            entry = SessionCacheEntry(history=[result], last_accessed=utcnow(), ttl_seconds=self.ttl_seconds)
            logger.debug("Session created", session_id=session_id)
        else:
            entry = entry.model_copy(update={"history": [*entry.history, result], "last_accessed": utcnow()})

        await self.cache.set(session_id, entry)
        logger.debug("Session updated", session_id=session_id, turns=len(entry.history))

    async def invalidate_session(self, session_id: str) -> bool:
        removed = await self.cache.delete(session_id)
        if removed:
            logger.debug("Session invalidated", session_id=session_id)
        return removed

    async def get_cache_stats(self) -> SessionCacheStats:
        values = await self.cache.values()
        return SessionCacheStats(
            active_sessions=await self.cache.size(),
            total_messages=sum(len(entry.history) for entry in values),
        )

    async def cleanup_expired_sessions(self) -> int:
        return await self.cache.cleanup_expired_sessions()

    def start_cleanup_task(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Session cleanup task started", interval_s=self.cleanup_interval_seconds)

    async def stop_cleanup_task(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
        logger.info("Session cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.cleanup_expired_sessions()
            except CacheUnavailable as e:
                logger.warning("Session cleanup skipped, cache unavailable", error=str(e))
