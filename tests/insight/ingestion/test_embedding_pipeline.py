"""
Tests for the embedding pipeline.

Tests verify:
- Pending logs are summarized, embedded and persisted
- Empty summaries are generated from the wide event
- A failed batch falls back to single calls and isolates failures
- The watermark advances and processed logs are not picked up again
- Targeted embedding by request id, including requeue of failed logs
- Outcome counters
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from insight.ingestion.embedding_pipeline import BATCH_OPERATION, EMBED_OPERATION, EmbeddingPipeline
from insight.ports import EmbeddingPort
from insight.schemas.events import EmbeddingResult, EmbeddingStatus
from libs.common.errors import ProviderRejected
from libs.common.metrics import OutcomeCounters
from libs.storage.log_store import RedisLogStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _vector(value: float) -> EmbeddingResult:
    return EmbeddingResult(embedding=[value, 1.0, 0.0], model="text-embedding-3-small")


@pytest.fixture
def store(redis_client):
    return RedisLogStore(redis_client)


@pytest.fixture
def embedding():
    mock = MagicMock(spec=EmbeddingPort)
    mock.create_batch_embeddings.side_effect = lambda texts: [_vector(float(i)) for i in range(len(texts))]
    mock.create_embedding.return_value = _vector(0.5)
    return mock


@pytest.fixture
def counters():
    return OutcomeCounters()


@pytest.fixture
def pipeline(store, embedding, counters):
    return EmbeddingPipeline(store, embedding, counters=counters, chunk_size=2, pause_ms=0)


async def _insert_three(store, make_event):
    await store.insert_event(make_event("r1", T0), summary="Checkout failed.\n\nOutcome: FAILED", event_id="e1")
    await store.insert_event(make_event("r2", T0 + timedelta(minutes=1), error_code="CARD_DECLINED"), event_id="e2")
    await store.insert_event(make_event("r3", T0 + timedelta(minutes=2)), summary="Checkout ok.", event_id="e3")


@pytest.mark.asyncio
async def test_embeds_pending_logs_and_generates_missing_summary(pipeline, store, make_event, counters):
    await _insert_three(store, make_event)

    embedded = await pipeline.process_pending_logs(limit=10)

    assert embedded == 3
    generated = await store.find_log_by_request_id("r2")
    assert generated.status == EmbeddingStatus.EMBEDDED
    assert "Outcome: FAILED" in generated.summary
    assert "Error: CARD_DECLINED" in generated.summary
    assert counters.snapshot()[EMBED_OPERATION].successes == 3
    assert counters.snapshot()[BATCH_OPERATION].successes == 2


@pytest.mark.asyncio
async def test_batch_failure_isolates_single_failure(store, embedding, counters, make_event):
    """Test 3 pending logs where the batch call fails and one single call fails."""
    await _insert_three(store, make_event)
    embedding.create_batch_embeddings.side_effect = ProviderRejected("embedding", "HTTP 500")
    embedding.create_embedding.side_effect = [
        _vector(1.0),
        ProviderRejected("embedding", "HTTP 400"),
        _vector(3.0),
    ]
    pipeline = EmbeddingPipeline(store, embedding, counters=counters, chunk_size=10, pause_ms=0)

    embedded = await pipeline.process_pending_logs(limit=10)

    assert embedded == 2
    statuses = [(await store.find_log_by_request_id(rid)).status for rid in ("r1", "r2", "r3")]
    assert statuses == [EmbeddingStatus.EMBEDDED, EmbeddingStatus.FAILED, EmbeddingStatus.EMBEDDED]
    failed = await store.find_log_by_request_id("r2")
    assert "HTTP 400" in failed.failure_reason
    assert counters.snapshot()[EMBED_OPERATION].failures_by_type == {"ProviderRejected": 1}
    assert await store.redis.llen("embedding_failures") == 1


@pytest.mark.asyncio
async def test_watermark_advances(pipeline, store, make_event):
    await _insert_three(store, make_event)

    await pipeline.process_pending_logs(limit=10)
    watermark = await store.get_watermark("wide_events")

    assert watermark.last_event_id == "e3"
    assert await pipeline.process_pending_logs(limit=10) == 0


@pytest.mark.asyncio
async def test_limit_is_respected(pipeline, store, make_event):
    await _insert_three(store, make_event)

    assert await pipeline.process_pending_logs(limit=2) == 2
    assert (await store.get_watermark("wide_events")).last_event_id == "e2"
    assert await pipeline.process_pending_logs(limit=2) == 1


@pytest.mark.asyncio
async def test_no_pending_logs(pipeline):
    assert await pipeline.process_pending_logs(limit=10) == 0


@pytest.mark.asyncio
async def test_embed_by_request_id(pipeline, store, make_event):
    await store.insert_event(make_event("r1", T0), event_id="e1")

    assert await pipeline.embed_by_request_id("r1") is True
    assert (await store.find_log_by_request_id("r1")).status == EmbeddingStatus.EMBEDDED
    # Already embedded
    assert await pipeline.embed_by_request_id("r1") is True
    assert await pipeline.embed_by_request_id("missing") is None


@pytest.mark.asyncio
async def test_embed_by_request_id_requeues_failed_log(pipeline, store, make_event):
    await store.insert_event(make_event("r1", T0), event_id="e1")
    await store.log_failure("e1", "r1", "HTTP 500")

    assert await pipeline.embed_by_request_id("r1") is True
    log = await store.find_log_by_request_id("r1")
    assert log.status == EmbeddingStatus.EMBEDDED
    assert log.failure_reason is None


@pytest.mark.asyncio
async def test_search_uses_vector_index(pipeline, store, embedding, make_event):
    await _insert_three(store, make_event)
    await pipeline.process_pending_logs(limit=10)
    embedding.create_embedding.return_value = _vector(0.0)

    matches = await pipeline.search("checkout failures", limit=2)

    assert len(matches) == 2
    assert matches[0].score >= matches[1].score
