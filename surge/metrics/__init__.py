"""
Run metrics: sinks, the per-run registry and the standard outcome recorder.

Provides:
- Counter, Rate, Trend: thread-safe, mergeable sinks
- MetricsRegistry: name/tag keyed sink lookup with type-collision checks
- OutcomeRecorder: the metric set every virtual user writes to

Usage:
    from surge.metrics import MetricsRegistry

    registry = MetricsRegistry()
    latency = registry.trend("latency_success")
    latency.add(120.0)
    print(registry.snapshot()["latency_success"]["p(95)"])
"""

from surge.metrics.sinks import Counter, Rate, Trend, percentile, percentile_key
from surge.metrics.registry import MetricsRegistry, metric_key, split_key
from surge.metrics.recorder import OutcomeRecorder

__all__ = [
    "Counter",
    "Rate",
    "Trend",
    "percentile",
    "percentile_key",
    "MetricsRegistry",
    "metric_key",
    "split_key",
    "OutcomeRecorder",
]
