"""
Tests for aggregation pipeline stages.

Tests verify:
- Dotted path lookup
- Match conditions (Eq, In, Exists, Between)
- Grouping with accumulators
- Sorting puts missing values last
- Nearest-rank percentiles
"""

from insight.aggregation.stages import (
    AddToSet,
    Avg,
    Between,
    Count,
    Eq,
    Exists,
    In,
    Max,
    Push,
    as_timestamp,
    get_path,
    group,
    limit,
    match,
    percentile,
    run_pipeline,
    sort,
)

ROWS = [
    {"service": "payments", "error": {"code": "GATEWAY_TIMEOUT"}, "ms": 900, "request_id": "r1"},
    {"service": "payments", "error": {"code": "CARD_DECLINED"}, "ms": 120, "request_id": "r2"},
    {"service": "payments", "error": {"code": "GATEWAY_TIMEOUT"}, "ms": 1500, "request_id": "r3"},
    {"service": "orders", "error": None, "ms": 40, "request_id": "r4"},
    {"service": "orders", "error": None, "ms": None, "request_id": "r5"},
]


def test_get_path():
    assert get_path(ROWS[0], "error.code") == "GATEWAY_TIMEOUT"
    assert get_path(ROWS[3], "error.code") is None
    assert get_path(ROWS[0], "missing.path", default="x") == "x"


def test_conditions():
    assert Eq("Payments").matches("payments")
    assert In(("a", "b")).matches("b")
    assert Exists(True).matches("X") and not Exists(True).matches(None)
    assert Exists(False).matches(None)
    assert Between(gte=1, lte=3).matches(3)
    assert not Between(gte=1, lte=3).matches(4)
    assert not Between(gte=1).matches(None)


def test_group_count_and_sort():
    rows = run_pipeline(
        ROWS,
        [
            match({"error.code": Exists(True)}),
            group("error.code", count=Count(), ids=Push({"id": "request_id"})),
            sort("count"),
        ],
    )

    assert [row["_id"] for row in rows] == ["GATEWAY_TIMEOUT", "CARD_DECLINED"]
    assert rows[0]["count"] == 2
    assert rows[0]["ids"] == [{"id": "r1"}, {"id": "r3"}]


def test_group_everything_with_numeric_accumulators():
    rows = run_pipeline(ROWS, [group(None, avg=Avg("ms"), max=Max("ms"), services=AddToSet("service"))])

    assert rows == [{"_id": None, "avg": 640.0, "max": 1500.0, "services": ["payments", "orders"]}]


def test_sort_missing_last_both_directions():
    descending = run_pipeline(ROWS, [sort("ms")])
    ascending = run_pipeline(ROWS, [sort("ms", descending=False)])

    assert descending[0]["request_id"] == "r3"
    assert descending[-1]["request_id"] == "r5"
    assert ascending[0]["request_id"] == "r4"
    assert ascending[-1]["request_id"] == "r5"


def test_limit_and_conditional_count():
    rows = run_pipeline(ROWS, [group("service", errors=Count(when=lambda row: bool(row["error"]))), limit(1)])

    assert rows == [{"_id": "payments", "errors": 3}]


def test_percentile_nearest_rank():
    values = [float(v) for v in range(1, 101)]

    assert percentile(values, 0.50) == 51.0
    assert percentile(values, 0.99) == 100.0
    assert percentile([], 0.5) is None


def test_as_timestamp():
    assert as_timestamp("2024-05-01T00:00:00Z").year == 2024
    assert as_timestamp("not a date") == "not a date"
