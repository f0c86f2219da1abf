"""
Tests for the Redis log store.

Tests verify:
- Inserted events are PENDING and indexed by time and request id
- Paging after the watermark is strictly ordered by (timestamp, event id)
- Failures and requeue move the status explicitly
- Vector search ranks by cosine similarity and honors filters
- Aggregation pipelines run over stored events with a time window
"""

from datetime import datetime, timedelta, timezone

import pytest

from insight.aggregation.stages import Between, Count, group, match, sort
from insight.schemas.analysis import QueryMetadata
from insight.schemas.events import EmbeddedLog, EmbeddingStatus, Watermark
from libs.storage.log_store import RedisLogStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(redis_client):
    return RedisLogStore(redis_client)


def _embedded(event_id: str, request_id: str, vector, service="payments", timestamp=T0) -> EmbeddedLog:
    return EmbeddedLog(
        event_id=event_id,
        request_id=request_id,
        summary=f"summary {request_id}",
        embedding=vector,
        model="test-model",
        service=service,
        timestamp=timestamp,
    )


@pytest.mark.asyncio
async def test_insert_and_lookup(store, make_event):
    event_id = await store.insert_event(make_event("r1"))

    log = await store.find_log_by_request_id("r1")

    assert log.internal_id == event_id
    assert log.status == EmbeddingStatus.PENDING
    assert log.wide_event.service == "payments"
    assert (await store.get_log_by_event_id(event_id)).request_id == "r1"
    assert await store.find_log_by_request_id("missing") is None


@pytest.mark.asyncio
async def test_naive_timestamps_are_stored_as_utc(store, make_event):
    event_id = await store.insert_event(make_event("r1", timestamp=datetime(2024, 5, 1, 12, 0)))

    event = await store.get_log_by_event_id(event_id)

    assert event.timestamp.tzinfo is not None


@pytest.mark.asyncio
async def test_find_after_watermark_is_strict(store, make_event):
    await store.insert_event(make_event("r1", T0), event_id="a")
    await store.insert_event(make_event("r2", T0), event_id="b")
    await store.insert_event(make_event("r3", T0 + timedelta(seconds=1)), event_id="c")

    everything = await store.find_logs_after_watermark("src", None, limit=10)
    after_a = await store.find_logs_after_watermark("src", Watermark(last_event_id="a", last_event_timestamp=T0), 10)

    assert [log.internal_id for log in everything] == ["a", "b", "c"]
    assert [log.internal_id for log in after_a] == ["b", "c"]


@pytest.mark.asyncio
async def test_only_pending_logs_are_returned(store, make_event):
    await store.insert_event(make_event("r1", T0), event_id="a")
    await store.insert_event(make_event("r2", T0 + timedelta(seconds=1)), event_id="b")
    await store.log_failure("a", "r1", "HTTP 500")

    pending = await store.find_logs_after_watermark("src", None, limit=10)

    assert [log.internal_id for log in pending] == ["b"]
    failed = await store.find_log_by_request_id("r1")
    assert failed.status == EmbeddingStatus.FAILED
    assert failed.failure_reason == "HTTP 500"

    await store.requeue("a")
    assert (await store.find_log_by_request_id("r1")).status == EmbeddingStatus.PENDING


@pytest.mark.asyncio
async def test_watermark_round_trip(store):
    assert await store.get_watermark("src") is None

    await store.save_embeddings_and_update_watermark("src", [], Watermark(last_event_id="x", last_event_timestamp=T0))

    watermark = await store.get_watermark("src")
    assert watermark.last_event_id == "x"
    assert watermark.last_event_timestamp == T0


@pytest.mark.asyncio
async def test_vector_search_ranks_and_filters(store, make_event):
    await store.insert_event(make_event("r1", T0), event_id="a")
    await store.insert_event(make_event("r2", T0, service="orders"), event_id="b")
    await store.insert_event(make_event("r3", T0 - timedelta(days=2)), event_id="c")
    await store.save_embeddings_and_update_watermark(
        "src",
        [
            _embedded("a", "r1", [1.0, 0.0]),
            _embedded("b", "r2", [0.9, 0.1], service="orders"),
            _embedded("c", "r3", [0.0, 1.0], timestamp=T0 - timedelta(days=2)),
        ],
        None,
    )

    ranked = await store.vector_search([1.0, 0.0], limit=3)
    filtered = await store.vector_search(
        [1.0, 0.0], limit=3, metadata=QueryMetadata(service="payments", start_time=T0 - timedelta(hours=1))
    )

    assert [match.request_id for match in ranked] == ["r1", "r2", "r3"]
    assert ranked[0].score == pytest.approx(1.0)
    assert [match.request_id for match in filtered] == ["r1"]
    assert (await store.find_log_by_request_id("r1")).status == EmbeddingStatus.EMBEDDED


@pytest.mark.asyncio
async def test_vector_search_empty_index(store):
    assert await store.vector_search([1.0, 0.0], limit=5) == []


@pytest.mark.asyncio
async def test_execute_aggregation_with_time_window(store, make_event):
    await store.insert_event(make_event("r1", T0, error_code="GATEWAY_TIMEOUT"))
    await store.insert_event(make_event("r2", T0 + timedelta(minutes=5), error_code="GATEWAY_TIMEOUT"))
    await store.insert_event(make_event("r3", T0 - timedelta(days=1), error_code="CARD_DECLINED"))

    rows = await store.execute_aggregation(
        [
            match({"timestamp": Between(gte=T0 - timedelta(hours=1), lte=T0 + timedelta(hours=1))}),
            group("error.code", count=Count()),
            sort("count"),
        ]
    )

    assert rows == [{"_id": "GATEWAY_TIMEOUT", "count": 2}]
