"""Metric templates for statistical questions.

Each template is static configuration: an id, a display name, the
parameters it cannot run without, the phrases that point to it, and a
builder that turns bound parameters into pipeline stages. Every pipeline
starts with the same metadata match stage, so service, route, role and
time filters from the question always apply.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from insight.aggregation.stages import (
    AddToSet,
    Avg,
    Between,
    Collect,
    Count,
    Eq,
    Exists,
    Max,
    Push,
    Row,
    Stage,
    add_fields,
    get_path,
    group,
    limit,
    match,
    percentile,
    project,
    sort,
)
from insight.schemas.analysis import QueryMetadata
from insight.tools.latency import bucket_rank, classify_latency

EXAMPLE_FIELDS = {
    "request_id": "request_id",
    "timestamp": "timestamp",
    "service": "service",
    "route": "route",
    "error_message": "error.message",
}
MAX_EXAMPLES = 3
DEFAULT_TOP_N = 5


@dataclass(frozen=True)
class MetricTemplate:
    id: str
    name: str
    description: str
    build_pipeline: Callable[[Mapping[str, Any]], List[Stage]] = field(repr=False)
    required_params: Tuple[str, ...] = ()
    signals: Tuple[str, ...] = ()

    def missing_params(self, params: Mapping[str, Any]) -> List[str]:
        return [name for name in self.required_params if params.get(name) is None]


def build_match_stage(metadata: Optional[QueryMetadata], extra: Optional[Mapping[str, Any]] = None) -> Stage:
    """Translate query metadata into a match stage."""
    conditions: Dict[str, Any] = {}
    if metadata is not None:
        if metadata.start_time or metadata.end_time:
            conditions["timestamp"] = Between(gte=metadata.start_time, lte=metadata.end_time)
        if metadata.service:
            conditions["service"] = Eq(metadata.service)
        if metadata.route:
            conditions["route"] = Eq(metadata.route)
        if metadata.error_code:
            conditions["error.code"] = Eq(metadata.error_code)
        elif metadata.has_error:
            conditions["error.code"] = Exists(True)
        if metadata.user_role:
            conditions["user.role"] = Eq(metadata.user_role.value)
    conditions.update(extra or {})
    return match(conditions)


def _metadata(params: Mapping[str, Any]) -> Optional[QueryMetadata]:
    return params.get("metadata")


def _top_n(params: Mapping[str, Any]) -> int:
    return int(params.get("top_n") or DEFAULT_TOP_N)


def _error_code_rows(params: Mapping[str, Any]) -> List[Stage]:
    return [
        build_match_stage(_metadata(params), {"error.code": Exists(True)}),
        group("error.code", count=Count(), examples=Push(EXAMPLE_FIELDS)),
        sort("count"),
        limit(_top_n(params)),
        project(lambda row: {
            "error_code": row["_id"],
            "count": row["count"],
            "examples": row["examples"][:MAX_EXAMPLES],
        }),
    ]


def _errors_by(path: str, label: str) -> Callable[[Mapping[str, Any]], List[Stage]]:
    def build(params: Mapping[str, Any]) -> List[Stage]:
        return [
            build_match_stage(_metadata(params), {"error.code": Exists(True)}),
            group(path, count=Count(), error_codes=AddToSet("error.code"), examples=Push(EXAMPLE_FIELDS)),
            sort("count"),
            limit(_top_n(params)),
            project(lambda row: {
                label: row["_id"],
                "count": row["count"],
                "error_codes": row["error_codes"],
                "examples": row["examples"][:MAX_EXAMPLES],
            }),
        ]

    return build


def _has_error(row: Row) -> bool:
    return bool(get_path(row, "error.code"))


def _error_rate(params: Mapping[str, Any]) -> List[Stage]:
    metadata = _metadata(params)
    # The rate needs successes too, so the error filter is not applied
    unfiltered = metadata.model_copy(update={"has_error": False, "error_code": None}) if metadata else None
    return [
        build_match_stage(unfiltered),
        group(None, total_count=Count(), error_count=Count(when=_has_error)),
        project(lambda row: {
            "total_count": row["total_count"],
            "error_count": row["error_count"],
            "error_rate": round(row["error_count"] / row["total_count"] * 100, 2) if row["total_count"] else 0.0,
        }),
    ]


def _latency_percentiles(params: Mapping[str, Any]) -> List[Stage]:
    def summarize(row: Row) -> Row:
        durations = sorted(row["durations"])
        return {
            "count": len(durations),
            "p50": percentile(durations, 0.50),
            "p95": percentile(durations, 0.95),
            "p99": percentile(durations, 0.99),
            "avg": row["avg"],
            "max": row["max"],
        }

    return [
        build_match_stage(_metadata(params), {"performance.duration_ms": Exists(True)}),
        group(
            None,
            durations=Collect("performance.duration_ms"),
            avg=Avg("performance.duration_ms"),
            max=Max("performance.duration_ms"),
        ),
        project(summarize),
    ]


def _latency_distribution(params: Mapping[str, Any]) -> List[Stage]:
    thresholds = params.get("latency_thresholds")
    metadata = _metadata(params)
    return [
        build_match_stage(metadata),
        add_fields(latency_bucket=lambda row: classify_latency(get_path(row, "performance.duration_ms"), thresholds)),
        group("latency_bucket", count=Count(), error_count=Count(when=_has_error)),
        sort(lambda row: bucket_rank(row["_id"]), descending=False),
        project(lambda row: {
            "latency_bucket": row["_id"].value,
            "count": row["count"],
            "error_count": row["error_count"],
        }),
    ]


METRIC_TEMPLATES: Dict[str, MetricTemplate] = {
    template.id: template
    for template in [
        MetricTemplate(
            id="ERROR_COUNT_BY_ROLE",
            name="Error count by user role",
            description="Errors for one user role within a time range, grouped by error code",
            build_pipeline=_error_code_rows,
            required_params=("start_time", "end_time", "user_role"),
            signals=("how many", "count", "number of", "total", "by role", "premium", "admin", "anonymous", "guest"),
        ),
        MetricTemplate(
            id="ERROR_COUNT_IN_RANGE",
            name="Error count in time range",
            description="Errors within a time range, grouped by error code",
            build_pipeline=_error_code_rows,
            required_params=("start_time", "end_time"),
            signals=("how many", "count", "number of", "total", "trend"),
        ),
        MetricTemplate(
            id="TOP_ERROR_CODES",
            name="Top error codes",
            description="Most frequent error codes with example requests",
            build_pipeline=_error_code_rows,
            signals=("top", "how many", "most common", "most frequent", "frequent", "error codes", "which error", "ranking"),
        ),
        MetricTemplate(
            id="ERROR_DISTRIBUTION_BY_ROUTE",
            name="Errors by route",
            description="Error counts and codes per route",
            build_pipeline=_errors_by("route", "route"),
            signals=("by route", "per route", "which route", "which endpoint", "route", "endpoint"),
        ),
        MetricTemplate(
            id="ERROR_BY_SERVICE",
            name="Errors by service",
            description="Error counts and codes per service",
            build_pipeline=_errors_by("service", "service"),
            signals=("by service", "per service", "which service", "services"),
        ),
        MetricTemplate(
            id="ERROR_RATE",
            name="Error rate",
            description="Share of requests that failed",
            build_pipeline=_error_rate,
            signals=("error rate", "failure rate", "rate", "ratio", "percentage", "percent"),
        ),
        MetricTemplate(
            id="LATENCY_PERCENTILE",
            name="Latency percentiles",
            description="p50, p95, p99, average and maximum request duration",
            build_pipeline=_latency_percentiles,
            signals=("latency", "percentile", "p50", "p90", "p95", "p99", "response time", "duration", "average", "avg", "median"),
        ),
        MetricTemplate(
            id="LATENCY_DISTRIBUTION",
            name="Latency distribution",
            description="Request counts per latency bucket",
            build_pipeline=_latency_distribution,
            signals=("latency distribution", "latency breakdown", "distribution", "breakdown", "bucket"),
        ),
    ]
}


def sample_size(template_id: str, rows: Sequence[Row]) -> int:
    """Number of log records a template's rows were computed from."""
    if template_id == "ERROR_RATE":
        return sum(int(row.get("total_count") or 0) for row in rows)
    return sum(int(row.get("count") or 0) for row in rows)
