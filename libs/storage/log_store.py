"""
Redis-backed log storage.

Implements ``LogStoragePort`` on the shared Redis client:

- ``log:{event_id}`` hash: the wide event as JSON, its summary, embedding
  status, model and failure reason
- ``logs:by_time`` sorted set: event ids scored by event timestamp, so ties
  are ordered by event id and ``(timestamp, event_id)`` is a total order
- ``logs:request_ids`` hash: request id -> event id
- ``embedding:{event_id}`` JSON vectors, indexed by the ``embeddings`` set
- ``watermark:{source}`` hash: last event handled by ingestion

Vector search is brute-force cosine similarity with numpy; aggregation runs
``insight.aggregation`` stages over the stored events.
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import redis.asyncio as redis
import structlog

from insight.aggregation.stages import Between, Stage, run_pipeline
from insight.ports import LogStoragePort
from insight.schemas.analysis import QueryMetadata
from insight.schemas.events import (
    EmbeddedLog,
    EmbeddingStatus,
    LogEmbeddingEntity,
    VectorMatch,
    Watermark,
    WideEvent,
)

logger = structlog.get_logger(__name__)

LOG_KEY_PREFIX = "log:"
EMBEDDING_KEY_PREFIX = "embedding:"
WATERMARK_KEY_PREFIX = "watermark:"
TIME_INDEX_KEY = "logs:by_time"
REQUEST_INDEX_KEY = "logs:request_ids"
EMBEDDING_INDEX_KEY = "embeddings"
FAILURES_KEY = "embedding_failures"
MAX_FAILURE_RECORDS = 1000
PAGE_SIZE = 200


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _score(value: datetime) -> float:
    return _aware(value).timestamp()


class RedisLogStore(LogStoragePort):
    """
    Wide events and their embeddings in Redis.

    Usage:
        store = RedisLogStore(await get_redis_client())
        event_id = await store.insert_event(event)
        matches = await store.vector_search(query_vector, limit=10)
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @staticmethod
    def _log_key(event_id: str) -> str:
        return f"{LOG_KEY_PREFIX}{event_id}"

    @staticmethod
    def _embedding_key(event_id: str) -> str:
        return f"{EMBEDDING_KEY_PREFIX}{event_id}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_event(self, event: WideEvent, summary: str = "", event_id: Optional[str] = None) -> str:
        """Persist a wide event as PENDING and index it. Returns its event id."""
        event_id = event_id or uuid.uuid4().hex
        event = event.model_copy(update={"timestamp": _aware(event.timestamp)})
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._log_key(event_id),
                mapping={
                    "event": event.model_dump_json(),
                    "summary": summary,
                    "status": EmbeddingStatus.PENDING.value,
                },
            )
            pipe.zadd(TIME_INDEX_KEY, {event_id: _score(event.timestamp)})
            pipe.hset(REQUEST_INDEX_KEY, event.request_id, event_id)
            await pipe.execute()
        return event_id

    async def save_embeddings_and_update_watermark(
        self, source: str, results: List[EmbeddedLog], watermark: Optional[Watermark]
    ) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            for result in results:
                pipe.set(self._embedding_key(result.event_id), result.model_dump_json())
                pipe.sadd(EMBEDDING_INDEX_KEY, result.event_id)
                pipe.hset(
                    self._log_key(result.event_id),
                    mapping={
                        "summary": result.summary,
                        "status": EmbeddingStatus.EMBEDDED.value,
                        "model": result.model,
                        "failure_reason": "",
                    },
                )
            if watermark is not None:
                pipe.hset(
                    f"{WATERMARK_KEY_PREFIX}{source}",
                    mapping={
                        "last_event_id": watermark.last_event_id,
                        "last_event_timestamp": _aware(watermark.last_event_timestamp).isoformat(),
                    },
                )
            await pipe.execute()
        logger.debug("Embeddings saved", source=source, count=len(results))

    async def log_failure(self, event_id: str, request_id: str, reason: str) -> None:
        record = json.dumps({"event_id": event_id, "request_id": request_id, "reason": reason, "at": time.time()})
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._log_key(event_id),
                mapping={"status": EmbeddingStatus.FAILED.value, "failure_reason": reason},
            )
            pipe.lpush(FAILURES_KEY, record)
            pipe.ltrim(FAILURES_KEY, 0, MAX_FAILURE_RECORDS - 1)
            await pipe.execute()
        logger.warning("Embedding failure recorded", event_id=event_id, request_id=request_id, reason=reason)

    async def requeue(self, event_id: str) -> None:
        await self.redis.hset(
            self._log_key(event_id),
            mapping={"status": EmbeddingStatus.PENDING.value, "failure_reason": ""},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _entity(self, event_id: str, data: Dict[str, str]) -> LogEmbeddingEntity:
        event = WideEvent.model_validate_json(data["event"])
        entity = LogEmbeddingEntity(
            internal_id=event_id,
            request_id=event.request_id,
            timestamp=event.timestamp,
            summary=data.get("summary", ""),
            status=EmbeddingStatus(data.get("status", EmbeddingStatus.PENDING.value)),
            service=event.service,
            model=data.get("model") or None,
            wide_event=event,
        )
        entity.failure_reason = data.get("failure_reason") or None
        return entity

    async def get_watermark(self, source: str) -> Optional[Watermark]:
        data = await self.redis.hgetall(f"{WATERMARK_KEY_PREFIX}{source}")
        if not data:
            return None
        return Watermark(
            last_event_id=data["last_event_id"],
            last_event_timestamp=datetime.fromisoformat(data["last_event_timestamp"]),
        )

    async def find_logs_after_watermark(
        self, source: str, watermark: Optional[Watermark], limit: int
    ) -> List[LogEmbeddingEntity]:
        min_score = _score(watermark.last_event_timestamp) if watermark else "-inf"
        found: List[LogEmbeddingEntity] = []
        offset = 0
        while len(found) < limit:
            page = await self.redis.zrangebyscore(
                TIME_INDEX_KEY, min_score, "+inf", start=offset, num=PAGE_SIZE, withscores=True
            )
            if not page:
                break
            offset += len(page)
            for event_id, score in page:
                if watermark and (score, event_id) <= (min_score, watermark.last_event_id):
                    continue
                data = await self.redis.hgetall(self._log_key(event_id))
                if data and data.get("status") == EmbeddingStatus.PENDING.value:
                    found.append(self._entity(event_id, data))
                    if len(found) >= limit:
                        break
        return found

    async def find_log_by_request_id(self, request_id: str) -> Optional[LogEmbeddingEntity]:
        event_id = await self.redis.hget(REQUEST_INDEX_KEY, request_id)
        if not event_id:
            return None
        data = await self.redis.hgetall(self._log_key(event_id))
        return self._entity(event_id, data) if data else None

    async def get_log_by_event_id(self, event_id: str) -> Optional[WideEvent]:
        raw = await self.redis.hget(self._log_key(event_id), "event")
        return WideEvent.model_validate_json(raw) if raw else None

    async def vector_search(
        self, embedding: List[float], limit: int, metadata: Optional[QueryMetadata] = None
    ) -> List[VectorMatch]:
        event_ids = sorted(await self.redis.smembers(EMBEDDING_INDEX_KEY))
        if not event_ids or limit <= 0:
            return []

        raw_docs = await self.redis.mget([self._embedding_key(event_id) for event_id in event_ids])
        docs = [EmbeddedLog.model_validate_json(raw) for raw in raw_docs if raw]
        docs = [doc for doc in docs if self._matches_filters(doc, metadata) and len(doc.embedding) == len(embedding)]
        if not docs:
            return []

        query = np.asarray(embedding, dtype=float)
        matrix = np.asarray([doc.embedding for doc in docs], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(docs)), where=norms > 0)

        order = np.argsort(-scores, kind="stable")[:limit]
        return [
            VectorMatch(
                event_id=docs[i].event_id,
                request_id=docs[i].request_id,
                summary=docs[i].summary,
                score=float(scores[i]),
                service=docs[i].service,
                timestamp=docs[i].timestamp,
            )
            for i in order
        ]

    @staticmethod
    def _matches_filters(doc: EmbeddedLog, metadata: Optional[QueryMetadata]) -> bool:
        if metadata is None:
            return True
        if metadata.service and (doc.service or "").lower() != metadata.service.lower():
            return False
        timestamp = _aware(doc.timestamp)
        if metadata.start_time and timestamp < _aware(metadata.start_time):
            return False
        if metadata.end_time and timestamp > _aware(metadata.end_time):
            return False
        return True

    async def execute_aggregation(self, pipeline: Sequence[Stage]) -> List[Dict[str, Any]]:
        start_time = time.time()
        min_score, max_score = "-inf", "+inf"
        # Narrow the scan with the leading match stage's time range
        if pipeline and pipeline[0].name == "match":
            window = pipeline[0].params.get("conditions", {}).get("timestamp")
            if isinstance(window, Between):
                min_score = _score(window.gte) if window.gte else min_score
                max_score = _score(window.lte) if window.lte else max_score

        event_ids = await self.redis.zrangebyscore(TIME_INDEX_KEY, min_score, max_score)
        rows: List[Dict[str, Any]] = []
        for offset in range(0, len(event_ids), PAGE_SIZE):
            keys = event_ids[offset:offset + PAGE_SIZE]
            async with self.redis.pipeline(transaction=False) as pipe:
                for event_id in keys:
                    pipe.hget(self._log_key(event_id), "event")
                raw_events = await pipe.execute()
            rows.extend(WideEvent.model_validate_json(raw).model_dump() for raw in raw_events if raw)

        result = run_pipeline(rows, pipeline)
        logger.debug(
            "Aggregation pipeline executed",
            scanned=len(rows),
            stages=[stage.name for stage in pipeline],
            rows=len(result),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result


_log_store: Optional[RedisLogStore] = None


async def get_log_store() -> RedisLogStore:
    """Get or create the log store on the shared Redis client."""
    global _log_store
    if _log_store is None:
        from libs.caching.redis_client import get_redis_client

        client = await get_redis_client()
        if client is None:
            raise RuntimeError("Redis is not available for log storage")
        _log_store = RedisLogStore(client)
    return _log_store
