"""
Tests for dual-layer summary generation.

Tests verify:
- Failed, slow, edge-case and successful events get the right outcome
- The narrative uses display names for services, routes and errors
- The canonical layer lists every field in a fixed order
- The same event always yields the same summary
"""

from insight.ingestion.summary_enrichment import (
    determine_outcome,
    error_description,
    generate_dual_layer_summary,
    route_display_name,
)
from insight.schemas.analysis import LatencyBucket


def test_failed_event_summary(make_event):
    event = make_event(error_code="GATEWAY_TIMEOUT", error_message="upstream took 30s", duration_ms=30000)

    summary = generate_dual_layer_summary(event)

    narrative, canonical = summary.split("\n\n")
    assert narrative == (
        "A premium user experienced a payment failure during checkout "
        "due to gateway timeout: upstream took 30s."
    )
    assert canonical == (
        "Outcome: FAILED, Service: payments, Route: POST /payments/checkout, "
        "Error: GATEWAY_TIMEOUT, ErrorMessage: upstream took 30s, "
        "UserRole: PREMIUM, LatencyBucket: >1000ms"
    )


def test_slow_event_is_warning(make_event):
    summary = generate_dual_layer_summary(make_event(duration_ms=1500))

    assert summary.startswith("A premium user encountered slow performance during payment checkout.")
    assert "Outcome: WARNING" in summary
    assert "Error: NONE, ErrorMessage: NONE" in summary


def test_successful_event(make_event):
    summary = generate_dual_layer_summary(make_event(role="USER", duration_ms=80))

    assert summary.startswith("A regular user successfully completed payment checkout.")
    assert summary.endswith("LatencyBucket: 50-200ms")


def test_unknown_latency_is_edge_case(make_event):
    assert determine_outcome(make_event(duration_ms=None), LatencyBucket.UNKNOWN) == "EDGE_CASE"


def test_custom_thresholds_change_bucket(make_event):
    summary = generate_dual_layer_summary(make_event(duration_ms=120), latency_thresholds=(10, 20, 100, 110))

    assert "LatencyBucket: >1000ms" in summary


def test_summary_is_deterministic(make_event):
    event = make_event(error_code="CARD_DECLINED")

    assert generate_dual_layer_summary(event) == generate_dual_layer_summary(event)


def test_display_helpers():
    assert route_display_name("POST /users/profile") == "profile access"
    assert route_display_name("/health") == "/health"
    assert error_description("CARD_DECLINED") == "card declined"
