"""Aggregation pipeline stages.

A pipeline is an ordered list of ``Stage`` objects applied to wide-event
rows (dicts as produced by ``WideEvent.model_dump()``). Field paths use
dots, e.g. ``"error.code"`` or ``"performance.duration_ms"``.

    pipeline = [
        match({"error.code": Exists(True)}),
        group("error.code", count=Count()),
        sort("count"),
        limit(5),
    ]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Union

Row = Dict[str, Any]
_MISSING = object()


def get_path(row: Mapping[str, Any], path: str, default: Any = None) -> Any:
    value: Any = row
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return default
        value = value.get(part, _MISSING)
        if value is _MISSING:
            return default
    return value


# ==============================================================================
# Match conditions
# ==============================================================================


class Condition:
    def matches(self, value: Any) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Eq(Condition):
    value: Any

    def matches(self, value: Any) -> bool:
        if isinstance(self.value, str) and isinstance(value, str):
            return value.lower() == self.value.lower()
        return value == self.value


@dataclass(frozen=True)
class In(Condition):
    values: tuple

    def matches(self, value: Any) -> bool:
        return value in self.values


@dataclass(frozen=True)
class Exists(Condition):
    """Present and not None (or, with ``False``, absent or None)."""

    flag: bool = True

    def matches(self, value: Any) -> bool:
        return (value is not None and value != "") == self.flag


@dataclass(frozen=True)
class Between(Condition):
    """Inclusive range; either bound may be omitted."""

    gte: Any = None
    lte: Any = None

    def matches(self, value: Any) -> bool:
        if value is None:
            return False
        if self.gte is not None and value < self.gte:
            return False
        if self.lte is not None and value > self.lte:
            return False
        return True


# ==============================================================================
# Group accumulators
# ==============================================================================


class Accumulator:
    def initial(self) -> Any:
        return None

    def add(self, state: Any, row: Row) -> Any:
        raise NotImplementedError

    def result(self, state: Any) -> Any:
        return state


class Count(Accumulator):
    def __init__(self, when: Optional[Callable[[Row], bool]] = None):
        self.when = when

    def initial(self) -> int:
        return 0

    def add(self, state: int, row: Row) -> int:
        return state + 1 if self.when is None or self.when(row) else state


class Push(Accumulator):
    """Collect a projection of every row, in input order."""

    def __init__(self, fields: Mapping[str, str]):
        self.fields = dict(fields)

    def initial(self) -> list:
        return []

    def add(self, state: list, row: Row) -> list:
        state.append({name: get_path(row, path) for name, path in self.fields.items()})
        return state


class AddToSet(Accumulator):
    def __init__(self, path: str):
        self.path = path

    def initial(self) -> list:
        return []

    def add(self, state: list, row: Row) -> list:
        value = get_path(row, self.path)
        if value is not None and value not in state:
            state.append(value)
        return state


class Collect(Accumulator):
    """Collect non-null values of a numeric field."""

    def __init__(self, path: str):
        self.path = path

    def initial(self) -> list:
        return []

    def add(self, state: list, row: Row) -> list:
        value = get_path(row, self.path)
        if value is not None:
            state.append(float(value))
        return state


class Avg(Collect):
    def result(self, state: list) -> Optional[float]:
        return round(sum(state) / len(state), 2) if state else None


class Max(Collect):
    def result(self, state: list) -> Optional[float]:
        return max(state) if state else None


# ==============================================================================
# Stages
# ==============================================================================


@dataclass(frozen=True)
class Stage:
    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    fn: Callable[[List[Row]], List[Row]] = field(default=lambda rows: rows, compare=False, repr=False)

    def apply(self, rows: List[Row]) -> List[Row]:
        return self.fn(rows)


def match(conditions: Mapping[str, Union[Condition, Any]]) -> Stage:
    """Keep rows satisfying every condition; plain values mean equality."""
    normalized = {path: c if isinstance(c, Condition) else Eq(c) for path, c in conditions.items()}

    def _apply(rows: List[Row]) -> List[Row]:
        return [row for row in rows if all(c.matches(get_path(row, p)) for p, c in normalized.items())]

    return Stage("match", {"conditions": normalized}, _apply)


def group(key: Union[str, Callable[[Row], Hashable], None], **accumulators: Accumulator) -> Stage:
    """Group rows by a field path (or key function); ``None`` groups everything."""

    def key_of(row: Row) -> Hashable:
        if key is None:
            return None
        if callable(key):
            return key(row)
        return get_path(row, key)

    def _apply(rows: List[Row]) -> List[Row]:
        states: Dict[Hashable, Dict[str, Any]] = {}
        for row in rows:
            group_key = key_of(row)
            if group_key not in states:
                states[group_key] = {name: acc.initial() for name, acc in accumulators.items()}
            for name, acc in accumulators.items():
                states[group_key][name] = acc.add(states[group_key][name], row)
        return [
            {"_id": group_key, **{name: accumulators[name].result(value) for name, value in state.items()}}
            for group_key, state in states.items()
        ]

    return Stage("group", {"key": key, "accumulators": sorted(accumulators)}, _apply)


def sort(by: Union[str, Callable[[Row], Any]], descending: bool = True) -> Stage:
    # Rows without the field sort last in either direction
    def sort_key(row: Row) -> Any:
        value = by(row) if callable(by) else get_path(row, by)
        missing = value is None
        return (not missing, value) if descending else (missing, value)

    def _apply(rows: List[Row]) -> List[Row]:
        return sorted(rows, key=sort_key, reverse=descending)

    return Stage("sort", {"by": by, "descending": descending}, _apply)


def limit(n: int) -> Stage:
    return Stage("limit", {"n": n}, lambda rows: rows[: max(n, 0)])


def add_fields(**derived: Callable[[Row], Any]) -> Stage:
    def _apply(rows: List[Row]) -> List[Row]:
        return [{**row, **{name: fn(row) for name, fn in derived.items()}} for row in rows]

    return Stage("add_fields", {"fields": sorted(derived)}, _apply)


def project(fn: Callable[[Row], Row]) -> Stage:
    return Stage("project", {}, lambda rows: [fn(row) for row in rows])


def percentile(sorted_values: Sequence[float], q: float) -> Optional[float]:
    """Nearest-rank percentile over an ascending list (index ``floor(q * n)``)."""
    if not sorted_values:
        return None
    index = min(int(q * len(sorted_values)), len(sorted_values) - 1)
    return sorted_values[index]


def run_pipeline(rows: List[Row], pipeline: Sequence[Stage]) -> List[Row]:
    for stage in pipeline:
        rows = stage.apply(rows)
    return rows


def as_timestamp(value: Any) -> Any:
    """Normalize ISO strings to datetimes so range checks compare like with like."""
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value
