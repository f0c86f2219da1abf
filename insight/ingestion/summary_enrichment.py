"""Dual-layer summaries for embedding.

A summary has two layers separated by a blank line:

    A premium user experienced a payment failure during checkout due to gateway timeout.

    Outcome: FAILED, Service: payments, Route: POST /payments/checkout, Error: GATEWAY_TIMEOUT, ...

The narrative layer gives natural-language questions something to match;
the canonical layer carries the structured facts and uses the same field
order as ``preprocess_query`` so queries and summaries line up. Both are
built from templates, so the same event always yields the same summary.
"""

import re
from typing import Optional, Sequence

from insight.schemas.analysis import LatencyBucket
from insight.schemas.events import WideEvent
from insight.tools.latency import classify_latency

SERVICE_DISPLAY_NAMES = {
    "payments": "payment",
    "embeddings": "embedding",
}

ROUTE_DISPLAY_NAMES = {
    "checkout": "checkout",
    "profile": "profile access",
    "login": "login",
    "register": "registration",
}

ROLE_DISPLAY_NAMES = {
    "PREMIUM": "premium",
    "ADMIN": "admin",
    "USER": "regular",
    "ANONYMOUS": "anonymous",
    "ANONYMOUS_USER": "anonymous",
    "GUEST": "guest",
}

ERROR_DESCRIPTIONS = {
    "GATEWAY_TIMEOUT": "gateway timeout",
    "INSUFFICIENT_BALANCE": "insufficient balance",
    "VALIDATION_ERROR": "validation error",
    "UNAUTHORIZED": "authorization failure",
    "NOT_FOUND": "resource not found",
    "INTERNAL_ERROR": "internal error",
}

_HTTP_METHOD = re.compile(r"^(GET|POST|PUT|DELETE|PATCH)\s+", re.IGNORECASE)


def determine_outcome(event: WideEvent, bucket: LatencyBucket) -> str:
    if event.has_error:
        return "FAILED"
    if bucket == LatencyBucket.OVER_1000MS:
        return "WARNING"
    if bucket == LatencyBucket.UNKNOWN:
        return "EDGE_CASE"
    return "SUCCESS"


def route_display_name(route: str) -> str:
    """``POST /users/profile`` -> ``profile access``."""
    path = _HTTP_METHOD.sub("", route)
    parts = [part for part in path.split("/") if part]
    if len(parts) > 1:
        return ROUTE_DISPLAY_NAMES.get(parts[-1], parts[-1])
    return path or route


def error_description(code: str) -> str:
    return ERROR_DESCRIPTIONS.get(code, code.lower().replace("_", " "))


def build_narrative(outcome: str, event: WideEvent, role: str) -> str:
    service = SERVICE_DISPLAY_NAMES.get(event.service, event.service)
    route = route_display_name(event.route)
    role_name = ROLE_DISPLAY_NAMES.get(role, role.lower())

    if outcome == "FAILED":
        sentence = f"A {role_name} user experienced a {service} failure during {route}"
        if event.error and event.error.code:
            sentence += f" due to {error_description(event.error.code)}"
            if event.error.message:
                sentence += f": {event.error.message}"
        return sentence + "."
    if outcome == "WARNING":
        return f"A {role_name} user encountered slow performance during {service} {route}."
    if outcome == "EDGE_CASE":
        return f"An edge case occurred for a {role_name} user during {service} {route}."
    return f"A {role_name} user successfully completed {service} {route}."


def generate_dual_layer_summary(event: WideEvent, latency_thresholds: Optional[Sequence[float]] = None) -> str:
    """Narrative sentence plus canonical facts for one wide event."""
    bucket = classify_latency(event.duration_ms, latency_thresholds)
    outcome = determine_outcome(event, bucket)
    role = event.user.role if event.user and event.user.role else "ANONYMOUS"
    error_code = event.error.code if event.error and event.error.code else "NONE"
    error_message = event.error.message if event.error and event.error.message else "NONE"

    canonical = (
        f"Outcome: {outcome}, Service: {event.service}, Route: {event.route}, "
        f"Error: {error_code}, ErrorMessage: {error_message}, "
        f"UserRole: {role}, LatencyBucket: {bucket.value}"
    )
    return f"{build_narrative(outcome, event, role)}\n\n{canonical}"
