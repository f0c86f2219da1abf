"""
Embedding ingestion pipeline.

Finds logs pending embedding after the ingestion watermark, makes sure each
has a dual-layer summary, embeds the summaries in batches and persists the
vectors. Failures are isolated per log: a log that cannot be summarized or
embedded is marked FAILED and the rest of the batch carries on.

Chunks are processed concurrently up to ``max_concurrency`` with a pause
after each chunk to respect provider rate limits. The watermark only
advances over the leading run of chunks that completed.
"""

import asyncio
import time
from typing import List, Optional, Sequence, Tuple

import structlog

from insight.ingestion.summary_enrichment import generate_dual_layer_summary
from insight.ports import EmbeddingPort, LogStoragePort
from insight.schemas.events import (
    EmbeddedLog,
    EmbeddingResult,
    EmbeddingStatus,
    LogEmbeddingEntity,
    VectorMatch,
    Watermark,
)
from insight.tools.provider_call import call_provider
from libs.common.errors import InsightError, ProviderError, ProviderRejected
from libs.common.metrics import OutcomeCounters

logger = structlog.get_logger(__name__)

EMBED_OPERATION = "embed_log"
BATCH_OPERATION = "embedding_batch"


class EmbeddingPipeline:
    """
    Background embedding of wide events.

    Usage:
        pipeline = EmbeddingPipeline(log_store, embedding_client)
        embedded = await pipeline.process_pending_logs(limit=100)
    """

    def __init__(
        self,
        storage: LogStoragePort,
        embedding: EmbeddingPort,
        counters: Optional[OutcomeCounters] = None,
        source: str = "wide_events",
        chunk_size: int = 50,
        pause_ms: int = 500,
        max_concurrency: int = 2,
        embedding_timeout: float = 15.0,
        storage_timeout: float = 10.0,
        latency_thresholds: Optional[Sequence[float]] = None,
    ):
        self.storage = storage
        self.embedding = embedding
        self.counters = counters or OutcomeCounters()
        self.source = source
        self.chunk_size = chunk_size
        self.pause_seconds = pause_ms / 1000
        self.max_concurrency = max_concurrency
        self.embedding_timeout = embedding_timeout
        self.storage_timeout = storage_timeout
        self.latency_thresholds = latency_thresholds

    async def process_pending_logs(self, limit: int) -> int:
        """
        Embed up to ``limit`` pending logs.

        Returns:
            Number of logs embedded
        """
        start_time = time.time()
        logger.info("Starting embedding process", source=self.source, limit=limit, chunk_size=self.chunk_size)

        watermark = await call_provider("storage", self.storage.get_watermark(self.source), self.storage_timeout)
        logs = await call_provider(
            "storage",
            self.storage.find_logs_after_watermark(self.source, watermark, limit),
            self.storage_timeout,
        )
        if not logs:
            logger.info("No new logs found for embedding after watermark", source=self.source)
            return 0

        chunks = [logs[i:i + self.chunk_size] for i in range(0, len(logs), self.chunk_size)]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_chunk(index: int, chunk: List[LogEmbeddingEntity]) -> int:
            async with semaphore:
                embedded = await self._embed_chunk(chunk)
                if index < len(chunks) - 1 and self.pause_seconds:
                    await asyncio.sleep(self.pause_seconds)
                return embedded

        outcomes = await asyncio.gather(
            *(run_chunk(i, chunk) for i, chunk in enumerate(chunks)), return_exceptions=True
        )

        embedded_count = 0
        last_completed: Optional[LogEmbeddingEntity] = None
        watermark_blocked = False
        for chunk, outcome in zip(chunks, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Embedding chunk failed", error=str(outcome), chunk_size=len(chunk))
                self.counters.record_failure(BATCH_OPERATION, type(outcome).__name__)
                watermark_blocked = True
                continue
            embedded_count += outcome
            self.counters.record_success(BATCH_OPERATION)
            if not watermark_blocked:
                last_completed = chunk[-1]

        if last_completed is not None:
            new_watermark = Watermark(
                last_event_id=last_completed.internal_id,
                last_event_timestamp=last_completed.timestamp,
            )
            await call_provider(
                "storage",
                self.storage.save_embeddings_and_update_watermark(self.source, [], new_watermark),
                self.storage_timeout,
            )
            logger.debug("Watermark advanced", last_event_id=new_watermark.last_event_id)

        logger.info(
            "Embedding process finished",
            source=self.source,
            candidates=len(logs),
            embedded=embedded_count,
            failed=sum(1 for log in logs if log.status == EmbeddingStatus.FAILED),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return embedded_count

    async def embed_by_request_id(self, request_id: str) -> Optional[bool]:
        """
        Embed one log on demand.

        A FAILED log is put back to PENDING first; an EMBEDDED log is left as is.

        Returns:
            True when the log is embedded afterwards, False if embedding failed,
            None if no log has this request id
        """
        log = await call_provider("storage", self.storage.find_log_by_request_id(request_id), self.storage_timeout)
        if log is None:
            logger.warning("Log not found for embedding", request_id=request_id)
            return None
        if log.status == EmbeddingStatus.EMBEDDED:
            logger.info("Log already embedded", request_id=request_id)
            return True
        if log.status == EmbeddingStatus.FAILED:
            await call_provider("storage", self.storage.requeue(log.internal_id), self.storage_timeout)
            log.requeue()
            logger.info("Failed log requeued for embedding", request_id=request_id)

        return await self._embed_chunk([log]) == 1

    async def search(self, query: str, limit: int = 5) -> List[VectorMatch]:
        """Plain vector similarity search, without reranking or synthesis."""
        logger.info("Searching for semantic matches", query=query[:100], limit=limit)
        result = await call_provider("embedding", self.embedding.create_embedding(query), self.embedding_timeout)
        return await call_provider(
            "storage", self.storage.vector_search(result.embedding, limit), self.storage_timeout
        )

    # ------------------------------------------------------------------

    async def _embed_chunk(self, chunk: List[LogEmbeddingEntity]) -> int:
        prepared: List[Tuple[LogEmbeddingEntity, str]] = []
        for log in chunk:
            summary = self._ensure_summary(log)
            if summary is None:
                await self._fail(log, "summary generation failed", "SummaryUnavailable")
            else:
                prepared.append((log, summary))
        if not prepared:
            return 0

        results = await self._embed_texts([summary for _, summary in prepared])

        to_save: List[EmbeddedLog] = []
        for (log, summary), result in zip(prepared, results):
            if isinstance(result, InsightError):
                await self._fail(log, str(result), type(result).__name__)
                continue
            log.summary = summary
            log.mark_embedded(result)
            to_save.append(
                EmbeddedLog(
                    event_id=log.internal_id,
                    request_id=log.request_id,
                    summary=summary,
                    embedding=result.embedding,
                    model=result.model,
                    service=log.service,
                    timestamp=log.timestamp,
                )
            )

        if to_save:
            await call_provider(
                "storage",
                self.storage.save_embeddings_and_update_watermark(self.source, to_save, None),
                self.storage_timeout,
            )
            self.counters.record_success(EMBED_OPERATION, count=len(to_save))
        return len(to_save)

    def _ensure_summary(self, log: LogEmbeddingEntity) -> Optional[str]:
        if log.summary and log.summary.strip():
            return log.summary
        if log.wide_event is None:
            return None
        try:
            return generate_dual_layer_summary(log.wide_event, self.latency_thresholds)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Summary enrichment failed", request_id=log.request_id, error=str(e))
            return None

    async def _embed_texts(self, texts: List[str]) -> List[object]:
        """One EmbeddingResult or error per text; falls back to single calls when the batch fails."""
        try:
            results = await call_provider(
                "embedding", self.embedding.create_batch_embeddings(texts), self.embedding_timeout
            )
            if len(results) != len(texts):
                raise ProviderRejected("embedding", f"expected {len(texts)} embeddings, got {len(results)}")
            return list(results)
        except ProviderError as e:
            logger.warning("Batch embedding failed, embedding one by one", error=str(e), batch_size=len(texts))

        single: List[object] = []
        for text in texts:
            try:
                result: EmbeddingResult = await call_provider(
                    "embedding", self.embedding.create_embedding(text), self.embedding_timeout
                )
                single.append(result)
            except ProviderError as e:
                single.append(e)
        return single

    async def _fail(self, log: LogEmbeddingEntity, reason: str, error_type: str) -> None:
        log.mark_failed(reason)
        self.counters.record_failure(EMBED_OPERATION, error_type)
        await call_provider(
            "storage",
            self.storage.log_failure(log.internal_id, log.request_id, reason),
            self.storage_timeout,
        )


_pipeline: Optional[EmbeddingPipeline] = None


async def get_embedding_pipeline() -> EmbeddingPipeline:
    """Get or create the global embedding pipeline from settings."""
    global _pipeline
    if _pipeline is None:
        from insight.tools.embedding_client import get_embedding_client
        from libs.common.metrics import get_outcome_counters
        from libs.common.settings import get_settings
        from libs.storage.log_store import get_log_store

        settings = get_settings()
        _pipeline = EmbeddingPipeline(
            storage=await get_log_store(),
            embedding=get_embedding_client(),
            counters=get_outcome_counters(),
            source=settings.embedding_source,
            chunk_size=settings.embedding_batch_chunk_size,
            pause_ms=settings.embedding_batch_pause_ms,
            max_concurrency=settings.embedding_max_concurrency,
            embedding_timeout=settings.embedding_timeout_seconds,
            storage_timeout=settings.storage_timeout_seconds,
            latency_thresholds=settings.latency_thresholds_ms,
        )
    return _pipeline
