"""
Run results and summary rendering.

RunResult is the stable, serializable outcome of one run: every sink's
final snapshot, the threshold verdicts and a per-scenario summary. Field
names are part of the contract ("type": "surge.run_result.v1") so
summaries can be diffed across runs or gated in CI.

format_report() renders the same data as text; write_summary() writes the
JSON document. Neither touches live sinks.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from surge.metrics.recorder import (
    HTTP_REQ_DURATION,
    HTTP_REQS,
    ITERATION_ERRORS,
    ITERATIONS,
    ITERATIONS_INTERRUPTED,
    TRACKED_STATUSES,
    latency_metric,
    outcome_metric,
    status_metric,
)
from surge.models import OutcomeCategory
from surge.thresholds import ThresholdVerdict

RESULT_TYPE = "surge.run_result.v1"


class ScenarioSummary(BaseModel):
    """Per-scenario figures for the summary."""

    name: str
    executor: str
    iterations: int = 0
    interrupted: int = 0
    peak_vus: int = 0
    spawned_vus: int = 0
    cancelled_vus: int = 0
    started_at: Optional[float] = None   # seconds since run start
    finished_at: Optional[float] = None


class RunResult(BaseModel):
    """
    Outcome of one run.

    Attributes:
        started_at / finished_at: Wall-clock bounds of the run.
        duration_seconds: Measured run duration (monotonic).
        metrics: Sink key -> final snapshot.
        thresholds: One verdict per threshold rule.
        passed: AND of every verdict (True without thresholds).
        scenarios: Per-scenario summary.
        aborted: True when the run was stopped early.
    """

    model_config = ConfigDict(frozen=True)

    type: str = RESULT_TYPE
    started_at: datetime
    finished_at: datetime
    duration_seconds: float = Field(..., ge=0)
    metrics: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    thresholds: List[ThresholdVerdict] = Field(default_factory=list)
    passed: bool = True
    scenarios: List[ScenarioSummary] = Field(default_factory=list)
    aborted: bool = False

    def metric(self, key: str) -> Dict[str, Any]:
        """Snapshot of one sink, or {} when it was never registered."""
        return self.metrics.get(key, {})

    def count(self, key: str) -> int:
        return int(self.metric(key).get("count", 0))

    def category_count(self, category: OutcomeCategory) -> int:
        return self.count(outcome_metric(category))

    @property
    def total_requests(self) -> int:
        return self.count(HTTP_REQS)

    @property
    def throughput(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.total_requests / self.duration_seconds

    def to_log_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _fmt(val: Optional[float], decimals: int = 1) -> str:
    if val is None:
        return "N/A"
    return f"{val:.{decimals}f}"


def _pct(part: int, whole: int) -> str:
    return f"{part / whole * 100:.1f}%" if whole else "0.0%"


def format_report(result: RunResult) -> str:
    """
    Format a run result as human-readable text.

    Sections: totals and throughput, status codes, outcome categories,
    per-category latency, scenarios, thresholds. Output is deterministic
    for a given result.
    """
    lines: List[str] = []
    total = result.total_requests

    lines.append("=" * 60)
    lines.append("SURGE RUN SUMMARY")
    lines.append("=" * 60)
    lines.append(f"Duration: {_fmt(result.duration_seconds, 2)}s" + (" (aborted)" if result.aborted else ""))
    lines.append(f"Requests: {total}")
    lines.append(f"Throughput: {_fmt(result.throughput, 2)} req/s")
    lines.append(f"Iterations: {result.count(ITERATIONS)}")
    interrupted = result.count(ITERATIONS_INTERRUPTED)
    errored = result.count(ITERATION_ERRORS)
    if interrupted or errored:
        lines.append(f"  interrupted: {interrupted}  behavior errors: {errored}")

    duration = result.metric(HTTP_REQ_DURATION)
    if duration:
        lines.append(
            f"Latency (ms): avg={_fmt(duration.get('avg'))} "
            f"p50={_fmt(duration.get('p(50)'))} "
            f"p95={_fmt(duration.get('p(95)'))} "
            f"p99={_fmt(duration.get('p(99)'))} "
            f"max={_fmt(duration.get('max'))}"
        )

    lines.append("")
    lines.append("--- Status Codes ---")
    for status in TRACKED_STATUSES:
        count = result.count(status_metric(status))
        lines.append(f"  {status}: {count} ({_pct(count, total)})")
    other = result.count("status_other")
    lines.append(f"  other: {other} ({_pct(other, total)})")

    lines.append("")
    lines.append("--- Outcomes ---")
    for category in OutcomeCategory:
        count = result.category_count(category)
        lines.append(f"  {category.value}: {count} ({_pct(count, total)})")

    lines.append("")
    lines.append("--- Latency by Outcome (ms) ---")
    for category in OutcomeCategory:
        trend = result.metric(latency_metric(category))
        if not trend or not trend.get("count"):
            continue
        lines.append(
            f"  {category.value}: avg={_fmt(trend.get('avg'))} "
            f"p50={_fmt(trend.get('p(50)'))} "
            f"p95={_fmt(trend.get('p(95)'))} "
            f"p99={_fmt(trend.get('p(99)'))}"
        )

    if result.scenarios:
        lines.append("")
        lines.append("--- Scenarios ---")
        for scenario in result.scenarios:
            lines.append(
                f"  {scenario.name} [{scenario.executor}]: "
                f"iterations={scenario.iterations} peak_vus={scenario.peak_vus} "
                f"interrupted={scenario.interrupted}"
            )

    if result.thresholds:
        lines.append("")
        lines.append("--- Thresholds ---")
        for verdict in result.thresholds:
            mark = "PASS" if verdict.passed else "FAIL"
            lines.append(
                f"  [{mark}] {verdict.metric}: {verdict.expression} "
                f"(observed {_fmt(verdict.observed, 4)})"
            )

    lines.append("")
    lines.append(f"RESULT: {'PASSED' if result.passed else 'FAILED'}")
    lines.append("")
    return "\n".join(lines)


def write_summary(result: RunResult, path: Union[str, Path]) -> Path:
    """Write the machine-readable summary as JSON; returns the path written."""
    target = Path(path)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(result.to_log_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    return target
