"""Outcome counters recorded synchronously after each operation."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional

OVERFLOW_KEY = "other"


@dataclass
class OperationStats:
    """Success/failure counts for one operation."""

    successes: int = 0
    failures: int = 0
    failures_by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.successes + self.failures

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.successes / self.total


class OutcomeCounters:
    """
    Bounded in-memory counters keyed by operation name.

    Usage:
        counters = OutcomeCounters()
        counters.record_success("ask.semantic")
        counters.record_failure("ask", "RetrievalFailure")
        counters.snapshot()["ask"].failures
    """

    def __init__(self, max_error_types: int = 20):
        self.max_error_types = max_error_types
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = threading.Lock()

    def record_success(self, operation: str, count: int = 1) -> None:
        with self._lock:
            self._stats[operation].successes += count

    def record_failure(self, operation: str, error_type: str, count: int = 1) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.failures += count
            key = error_type
            if key not in stats.failures_by_type and len(stats.failures_by_type) >= self.max_error_types:
                key = OVERFLOW_KEY
            stats.failures_by_type[key] = stats.failures_by_type.get(key, 0) + count

    def snapshot(self) -> Dict[str, OperationStats]:
        """Return a copy of the current counters."""
        with self._lock:
            return {
                name: OperationStats(
                    successes=stats.successes,
                    failures=stats.failures,
                    failures_by_type=dict(stats.failures_by_type),
                )
                for name, stats in self._stats.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


_counters: Optional[OutcomeCounters] = None


def get_outcome_counters() -> OutcomeCounters:
    """Process-wide counters shared by the orchestrator and ingestion."""
    global _counters
    if _counters is None:
        _counters = OutcomeCounters()
    return _counters
