"""
MetricsRegistry: per-run home of every metric sink.

Sinks are looked up by name, optionally narrowed by tags into a submetric
("http_req_duration{scenario:peak_test}"). A base name is bound to one sink
type for the registry's lifetime; asking for it as another type raises
SurgeMetricError. The recorder registers its full metric set up front, so
such collisions surface during setup rather than under load.

One registry is created per run. There is no global registry.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from surge.exceptions import SurgeMetricError
from surge.metrics.sinks import (
    COUNTER,
    DEFAULT_PERCENTILES,
    RATE,
    SINK_TYPES,
    TREND,
    Counter,
    Rate,
    Sink,
    Trend,
)


def metric_key(name: str, tags: Optional[Mapping[str, str]] = None) -> str:
    """Registry key for a metric and optional tags, tags sorted by name."""
    if not tags:
        return name
    inner = ",".join(f"{k}:{tags[k]}" for k in sorted(tags))
    return f"{name}{{{inner}}}"


def split_key(key: str) -> Tuple[str, Dict[str, str]]:
    """Inverse of metric_key: "a{x:1}" -> ("a", {"x": "1"})."""
    if not key.endswith("}") or "{" not in key:
        return key, {}
    name, _, inner = key[:-1].partition("{")
    tags: Dict[str, str] = {}
    for part in inner.split(","):
        if not part:
            continue
        tag, _, value = part.partition(":")
        tags[tag.strip()] = value.strip()
    return name, tags


class MetricsRegistry:
    """
    Thread-safe registry of named sinks.

    Example:
        registry = MetricsRegistry()
        registry.rate("errors").add(False)
        registry.trend("http_req_duration", {"scenario": "load"}).add(12.5)
        snapshot = registry.snapshot(duration_seconds=60.0)
    """

    def __init__(self) -> None:
        self._sinks: Dict[str, Sink] = {}
        self._kinds: Dict[str, str] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, tags: Optional[Mapping[str, str]] = None) -> Counter:
        return self._get_or_create(COUNTER, name, tags)  # type: ignore[return-value]

    def rate(self, name: str, tags: Optional[Mapping[str, str]] = None) -> Rate:
        return self._get_or_create(RATE, name, tags)  # type: ignore[return-value]

    def trend(self, name: str, tags: Optional[Mapping[str, str]] = None) -> Trend:
        return self._get_or_create(TREND, name, tags)  # type: ignore[return-value]

    def _get_or_create(
        self, kind: str, name: str, tags: Optional[Mapping[str, str]]
    ) -> Sink:
        key = metric_key(name, tags)
        with self._lock:
            bound = self._kinds.get(name)
            if bound is not None and bound != kind:
                raise SurgeMetricError(
                    f"metric {name!r} is already registered as a {bound}, not a {kind}",
                    metric=name,
                    details={"registered": bound, "requested": kind},
                )
            sink = self._sinks.get(key)
            if sink is None:
                sink = SINK_TYPES[kind](key)
                self._sinks[key] = sink
                self._kinds[name] = kind
            return sink

    def get(self, key: str) -> Sink:
        """Look up an existing sink by full key. Raises KeyError if absent."""
        with self._lock:
            return self._sinks[key]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sinks

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._sinks)

    def merge(self, other: "MetricsRegistry") -> None:
        """Fold another registry's samples into this one."""
        for key in other.keys():
            source = other.get(key)
            name, tags = split_key(key)
            target = self._get_or_create(source.kind, name, tags)
            target.merge(source)  # type: ignore[attr-defined]

    def snapshot(
        self,
        duration_seconds: float = 0.0,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Read-only view of every sink.

        Args:
            duration_seconds: Run wall-clock duration, used for counter rates.
            percentiles: Extra percentiles to include in trend snapshots.

        Returns:
            Mapping of sink key to its snapshot dict, keys in sorted order.
        """
        wanted = tuple(set(DEFAULT_PERCENTILES) | set(percentiles))
        with self._lock:
            sinks = sorted(self._sinks.items())
        return {
            key: sink.snapshot(duration_seconds=duration_seconds, percentiles=wanted)
            for key, sink in sinks
        }
