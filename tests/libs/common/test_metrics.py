"""
Tests for outcome counters.

Tests verify:
- Successes and failures per operation
- Failures by error type, with overflow into "other"
- Snapshots are copies
"""

from libs.common.metrics import OVERFLOW_KEY, OutcomeCounters


def test_record_and_snapshot():
    counters = OutcomeCounters()
    counters.record_success("ask")
    counters.record_success("ask", count=2)
    counters.record_failure("ask", "RetrievalFailure")

    stats = counters.snapshot()["ask"]

    assert stats.successes == 3
    assert stats.failures == 1
    assert stats.failures_by_type == {"RetrievalFailure": 1}
    assert stats.success_rate == 0.75


def test_error_types_are_bounded():
    counters = OutcomeCounters(max_error_types=2)
    for error_type in ("A", "B", "C", "D"):
        counters.record_failure("embed_log", error_type)

    assert counters.snapshot()["embed_log"].failures_by_type == {"A": 1, "B": 1, OVERFLOW_KEY: 2}


def test_snapshot_is_a_copy():
    counters = OutcomeCounters()
    counters.record_failure("ask", "ProviderTimeout")

    counters.snapshot()["ask"].failures_by_type["ProviderTimeout"] = 99

    assert counters.snapshot()["ask"].failures_by_type == {"ProviderTimeout": 1}


def test_reset():
    counters = OutcomeCounters()
    counters.record_success("ask")
    counters.reset()

    assert counters.snapshot() == {}
