"""
Durable chat history.

Every answered turn is appended to ``chat_history:{session_id}``. Unlike
the session cache this list has no idle TTL; it is trimmed to a maximum
length and expires after ``retention_seconds``.
"""

from typing import List

import redis.asyncio as redis
import structlog

from insight.ports import ChatHistoryPort
from insight.schemas.analysis import AnalysisResult
from libs.common.errors import CacheUnavailable

logger = structlog.get_logger(__name__)


class RedisChatHistory(ChatHistoryPort):
    """
    Append-only chat history in Redis.

    Usage:
        history = RedisChatHistory(redis_client)
        await history.save(result)
        turns = await history.find_by_session_id("s1")
    """

    def __init__(self, redis_client: redis.Redis, max_turns: int = 500, retention_seconds: int = 30 * 86400):
        self.redis = redis_client
        self.max_turns = max_turns
        self.retention_seconds = retention_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"chat_history:{session_id}"

    async def save(self, result: AnalysisResult) -> None:
        if not result.session_id:
            return
        key = self._key(result.session_id)
        try:
            await self.redis.rpush(key, result.model_dump_json())
            await self.redis.ltrim(key, -self.max_turns, -1)
            await self.redis.expire(key, self.retention_seconds)
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to persist chat history for {result.session_id}: {e}") from e

        logger.debug("Chat turn persisted", session_id=result.session_id, intent=result.intent.value)

    async def find_by_session_id(self, session_id: str) -> List[AnalysisResult]:
        try:
            raw_turns = await self.redis.lrange(self._key(session_id), 0, -1)
        except redis.RedisError as e:
            raise CacheUnavailable(f"Failed to read chat history for {session_id}: {e}") from e

        turns = []
        for raw in raw_turns:
            try:
                turns.append(AnalysisResult.model_validate_json(raw))
            except ValueError as e:
                logger.warning("Skipping unreadable chat turn", session_id=session_id, error=str(e))
        return turns


class InMemoryChatHistory(ChatHistoryPort):
    """Chat history for a single process and for tests."""

    def __init__(self):
        self._turns: dict = {}

    async def save(self, result: AnalysisResult) -> None:
        if result.session_id:
            self._turns.setdefault(result.session_id, []).append(result)

    async def find_by_session_id(self, session_id: str) -> List[AnalysisResult]:
        return list(self._turns.get(session_id, []))
