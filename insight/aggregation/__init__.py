"""Metric templates and the aggregation engine for statistical questions."""

from insight.aggregation.engine import AggregationEngine, sample_confidence
from insight.aggregation.templates import METRIC_TEMPLATES, MetricTemplate

__all__ = [
    "AggregationEngine",
    "METRIC_TEMPLATES",
    "MetricTemplate",
    "sample_confidence",
]
