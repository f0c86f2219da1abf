"""
Tests for the aggregation engine and metric templates.

Tests verify:
- Template selection by signals and bound parameters
- Partially-parameterized templates are never executed
- Default templates when nothing scores
- Executed pipelines honor metadata filters
- Error rate, latency percentiles and latency distribution rows
- Sample-size confidence ceiling
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from insight.aggregation.engine import AggregationEngine, sample_confidence
from insight.aggregation.stages import run_pipeline
from insight.aggregation.templates import METRIC_TEMPLATES, MetricTemplate
from insight.ports import LogStoragePort
from insight.schemas.analysis import QueryMetadata, UserRole
from insight.schemas.results import AggregationOutcome, NoMatchingAggregation
from insight.tools.query_metadata import QueryMetadataExtractor
from libs.common.errors import ProviderTimeout

NOW = datetime(2024, 5, 2, 15, 0, tzinfo=timezone.utc)
YESTERDAY = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def rows(make_event):
    events = [
        make_event("r1", YESTERDAY, role="PREMIUM", error_code="GATEWAY_TIMEOUT", duration_ms=1800),
        make_event("r2", YESTERDAY + timedelta(hours=1), role="PREMIUM", error_code="GATEWAY_TIMEOUT", duration_ms=2100),
        make_event("r3", YESTERDAY + timedelta(hours=2), role="PREMIUM", error_code="CARD_DECLINED", duration_ms=300),
        make_event("r4", YESTERDAY, role="USER", error_code="CARD_DECLINED", duration_ms=250),
        make_event("r5", YESTERDAY, role="PREMIUM", duration_ms=80),
        make_event("r6", YESTERDAY - timedelta(days=3), role="PREMIUM", error_code="OLD_ERROR", duration_ms=40),
    ]
    return [event.model_dump() for event in events]


@pytest.fixture
def storage(rows):
    mock = MagicMock(spec=LogStoragePort)
    mock.execute_aggregation.side_effect = lambda pipeline: run_pipeline(rows, pipeline)
    return mock


@pytest.fixture
def engine(storage):
    return AggregationEngine(storage)


def _metadata(query: str) -> QueryMetadata:
    return QueryMetadataExtractor().extract(query, now=NOW)


@pytest.mark.asyncio
async def test_premium_errors_yesterday(engine, storage):
    """Test role plus time range selects the role template and filters rows."""
    query = "how many errors did premium users have yesterday?"

    result = await engine.run(query, _metadata(query))

    assert isinstance(result, AggregationOutcome)
    assert result.template_id == "ERROR_COUNT_BY_ROLE"
    assert result.rows[0]["error_code"] == "GATEWAY_TIMEOUT"
    assert result.rows[0]["count"] == 2
    assert result.rows[1]["error_code"] == "CARD_DECLINED"
    assert result.rows[1]["count"] == 1
    assert result.sample_size == 3
    assert result.params["user_role"] == "PREMIUM"
    assert result.params["start_time"].startswith("2024-05-01")
    assert result.example_request_ids == ["r1", "r2", "r3"]
    storage.execute_aggregation.assert_awaited_once()


def test_missing_time_range_skips_role_template(engine):
    query = "how many errors for premium users?"

    template, _, considered, missing = engine.select(query, _metadata(query))

    assert template.id == "TOP_ERROR_CODES"
    assert considered[0] == "ERROR_COUNT_BY_ROLE"
    assert "start_time" in missing


@pytest.mark.asyncio
async def test_unsatisfiable_templates_are_not_executed(storage):
    templates = {
        "ERROR_COUNT_IN_RANGE": METRIC_TEMPLATES["ERROR_COUNT_IN_RANGE"],
        "ERROR_RATE": METRIC_TEMPLATES["ERROR_RATE"],
    }
    engine = AggregationEngine(storage, templates=templates)

    result = await engine.run("how many errors?", QueryMetadata(has_error=True))

    assert isinstance(result, NoMatchingAggregation)
    assert result.considered == ["ERROR_COUNT_IN_RANGE"]
    assert result.missing_params == ["start_time", "end_time"]
    storage.execute_aggregation.assert_not_awaited()


def test_nothing_scores_uses_defaults(engine):
    template, _, considered, _ = engine.select("tell me stats", QueryMetadata())

    assert template.id == "TOP_ERROR_CODES"
    assert considered == ["TOP_ERROR_CODES"]


def test_ties_keep_registry_order(storage):
    first = MetricTemplate("FIRST", "First", "", lambda params: [], signals=("errors",))
    second = MetricTemplate("SECOND", "Second", "", lambda params: [], signals=("errors",))
    engine = AggregationEngine(storage, templates={"FIRST": first, "SECOND": second})

    candidates = engine.candidate_templates("errors", engine.bind_params(QueryMetadata()))

    assert [template.id for template, _ in candidates] == ["FIRST", "SECOND"]


@pytest.mark.asyncio
async def test_error_rate_counts_successes(engine):
    query = "what was the error rate yesterday?"

    result = await engine.run(query, _metadata(query))

    assert result.template_id == "ERROR_RATE"
    assert result.rows == [{"total_count": 5, "error_count": 4, "error_rate": 80.0}]
    assert result.sample_size == 5


@pytest.mark.asyncio
async def test_latency_percentiles(engine):
    metadata = QueryMetadata(user_role=UserRole.PREMIUM)

    result = await engine.execute_template(METRIC_TEMPLATES["LATENCY_PERCENTILE"], engine.bind_params(metadata))

    row = result.rows[0]
    assert row["count"] == 5
    assert row["p50"] == 300.0
    assert row["max"] == 2100.0


@pytest.mark.asyncio
async def test_latency_distribution_ordered_by_bucket(engine):
    result = await engine.execute_template(
        METRIC_TEMPLATES["LATENCY_DISTRIBUTION"], engine.bind_params(QueryMetadata())
    )

    buckets = [row["latency_bucket"] for row in result.rows]
    assert buckets == ["<50ms", "50-200ms", "200-500ms", ">1000ms"]
    assert result.sample_size == 6


@pytest.mark.asyncio
async def test_storage_timeout_is_typed(storage):
    async def slow(pipeline):
        import asyncio

        await asyncio.sleep(1)

    storage.execute_aggregation.side_effect = slow
    engine = AggregationEngine(storage, timeout=0.01)

    with pytest.raises(ProviderTimeout):
        await engine.run("top error codes", QueryMetadata())


def test_sample_confidence():
    assert sample_confidence(0) == 0.3
    assert sample_confidence(9) == pytest.approx(0.65)
    assert sample_confidence(10 ** 6) == 0.95
    assert sample_confidence(10) > sample_confidence(3)
