"""
Metric sinks: Counter, Rate and Trend.

All sinks are append-only, thread-safe and mergeable. Writers hold a lock
only for the append itself; readers copy state under the lock and compute
aggregates outside it, so a snapshot never stalls VUs for longer than a
list copy.

Percentiles use linear interpolation between closest ranks:
rank = q/100 * (n - 1), interpolated between floor(rank) and ceil(rank)
of the sorted samples. For [100, 200, 300, 400, 500], p(50) == 300 and
p(95) == 480. Samples are stored raw, so results are exact.
"""

from __future__ import annotations

import math
import threading
from typing import Any, Dict, FrozenSet, Iterable, List, Sequence

DEFAULT_PERCENTILES = (50.0, 90.0, 95.0, 99.0)

COUNTER = "counter"
RATE = "rate"
TREND = "trend"


def percentile_key(q: float) -> str:
    """Snapshot key for a percentile: 95 -> "p(95)", 99.9 -> "p(99.9)"."""
    return f"p({q:g})"


def percentile(sorted_values: Sequence[float], q: float) -> float:
    """
    Linear-interpolation percentile over pre-sorted values.

    Args:
        sorted_values: Ascending samples.
        q: Percentile in [0, 100].

    Returns:
        Interpolated value, or 0.0 when there are no samples.
    """
    if not 0 <= q <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {q}")
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if n == 1:
        return float(sorted_values[0])
    rank = (q / 100.0) * (n - 1)
    low = int(math.floor(rank))
    high = int(math.ceil(rank))
    if low == high:
        return float(sorted_values[low])
    weight = rank - low
    return float(sorted_values[low] + (sorted_values[high] - sorted_values[low]) * weight)


class Sink:
    """Base class: a named, typed, lock-protected accumulator."""

    kind = ""
    aggregates: FrozenSet[str] = frozenset()

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()

    def supports(self, aggregate: str) -> bool:
        return aggregate in self.aggregates

    def snapshot(
        self,
        duration_seconds: float = 0.0,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"


class Counter(Sink):
    """Monotonic non-negative integer total."""

    kind = COUNTER
    aggregates = frozenset({"count", "rate"})

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._value = 0

    def add(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counter increments must be non-negative")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def merge(self, other: "Counter") -> None:
        self.add(other.value)

    def snapshot(
        self,
        duration_seconds: float = 0.0,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> Dict[str, Any]:
        count = self.value
        return {
            "type": self.kind,
            "count": count,
            "rate": count / duration_seconds if duration_seconds > 0 else 0.0,
        }


class Rate(Sink):
    """Share of true observations among all boolean samples."""

    kind = RATE
    aggregates = frozenset({"rate", "passes", "fails", "total"})

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._hits = 0
        self._total = 0

    def add(self, value: bool) -> None:
        with self._lock:
            self._total += 1
            if value:
                self._hits += 1

    def counts(self) -> tuple[int, int]:
        """(hits, total) read atomically."""
        with self._lock:
            return self._hits, self._total

    @property
    def rate(self) -> float:
        hits, total = self.counts()
        return hits / total if total else 0.0

    def merge(self, other: "Rate") -> None:
        hits, total = other.counts()
        with self._lock:
            self._hits += hits
            self._total += total

    def snapshot(
        self,
        duration_seconds: float = 0.0,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> Dict[str, Any]:
        hits, total = self.counts()
        return {
            "type": self.kind,
            "rate": hits / total if total else 0.0,
            "passes": hits,
            "fails": total - hits,
            "total": total,
        }


class Trend(Sink):
    """Unordered multiset of numeric samples (latencies in ms)."""

    kind = TREND
    aggregates = frozenset({"count", "min", "max", "avg", "med"})

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._samples: List[float] = []

    def supports(self, aggregate: str) -> bool:
        return aggregate in self.aggregates or aggregate.startswith("p(")

    def add(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def values(self) -> List[float]:
        """Copy of the current samples (unsorted)."""
        with self._lock:
            return list(self._samples)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._samples)

    def merge(self, other: "Trend") -> None:
        samples = other.values()
        with self._lock:
            self._samples.extend(samples)

    def percentile(self, q: float) -> float:
        return percentile(sorted(self.values()), q)

    def snapshot(
        self,
        duration_seconds: float = 0.0,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> Dict[str, Any]:
        ordered = sorted(self.values())
        count = len(ordered)
        data: Dict[str, Any] = {
            "type": self.kind,
            "count": count,
            "min": ordered[0] if count else 0.0,
            "max": ordered[-1] if count else 0.0,
            "avg": sum(ordered) / count if count else 0.0,
            "med": percentile(ordered, 50.0),
        }
        for q in sorted(set(percentiles)):
            data[percentile_key(q)] = percentile(ordered, q)
        return data


SINK_TYPES = {
    COUNTER: Counter,
    RATE: Rate,
    TREND: Trend,
}
