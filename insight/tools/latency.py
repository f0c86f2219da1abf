"""Latency bucket classification.

Buckets are contiguous and each one includes its lower bound, so with the
default thresholds exactly 200ms lands in ``200-500ms`` and exactly 1000ms
in ``>1000ms``. Thresholds come from settings and can be overridden per call.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

from insight.schemas.analysis import LatencyBucket

DEFAULT_THRESHOLDS_MS = (50.0, 200.0, 500.0, 1000.0)

_ORDERED_BUCKETS = (
    LatencyBucket.UNDER_50MS,
    LatencyBucket.FROM_50_TO_200MS,
    LatencyBucket.FROM_200_TO_500MS,
    LatencyBucket.FROM_500_TO_1000MS,
    LatencyBucket.OVER_1000MS,
)


def classify_latency(
    duration_ms: Optional[float],
    thresholds: Optional[Sequence[float]] = None,
) -> LatencyBucket:
    """Map a duration in milliseconds to its latency bucket.

    Args:
        duration_ms: Request duration; ``None``, NaN or negative values are unknown
        thresholds: Four increasing upper bounds (defaults to 50/200/500/1000)

    Returns:
        The bucket whose range contains the duration
    """
    if duration_ms is None:
        return LatencyBucket.UNKNOWN
    try:
        value = float(duration_ms)
    except (TypeError, ValueError):
        return LatencyBucket.UNKNOWN
    if math.isnan(value) or value < 0:
        return LatencyBucket.UNKNOWN

    bounds = tuple(thresholds) if thresholds is not None else DEFAULT_THRESHOLDS_MS
    if len(bounds) != len(_ORDERED_BUCKETS) - 1:
        raise ValueError("classify_latency needs exactly four thresholds")

    for bucket, upper in zip(_ORDERED_BUCKETS, bounds):
        if value < upper:
            return bucket
    return LatencyBucket.OVER_1000MS


def bucket_rank(bucket: LatencyBucket) -> int:
    """Position of a bucket in ascending order; unknown sorts last."""
    if bucket == LatencyBucket.UNKNOWN:
        return len(_ORDERED_BUCKETS)
    return _ORDERED_BUCKETS.index(bucket)
