"""
Execution plan: the scenarios of one run and the concurrency they ask for.

The plan is immutable. Time is passed in explicitly (seconds since run start
as read from a RunClock), so the concurrency curve can be inspected without
running anything:

    plan = ExecutionPlan.model_validate(config)
    plan.target_vus_at(12.5)   # {"load_test": 21, "peak_test": 0}
"""

from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from surge.models import ExecutorKind, ScenarioSpec, Stage, parse_duration


def ramp_level(start_vus: int, stages: Sequence[Stage], t: float) -> float:
    """
    Piecewise-linear concurrency of a ramping profile at scenario time t.

    Each stage moves linearly from the previous level to its target over its
    duration. Zero-length stages jump straight to their target. Past the last
    stage the final target holds.
    """
    level = float(start_vus)
    if t <= 0:
        return level
    offset = 0.0
    for stage in stages:
        if stage.duration <= 0:
            level = float(stage.target)
            continue
        if t < offset + stage.duration:
            fraction = (t - offset) / stage.duration
            return level + (stage.target - level) * fraction
        offset += stage.duration
        level = float(stage.target)
    return level


def target_vus(spec: ScenarioSpec, t: float) -> int:
    """
    Target concurrency of a scenario at scenario-local time t.

    Outside the active window [0, window) the target is 0. For per-vu-iterations
    the value is an upper bound: VUs leave as they finish their iterations.
    """
    if t < 0 or t >= spec.window_seconds:
        return 0
    if spec.executor == ExecutorKind.RAMPING_VUS:
        # Tolerance keeps exact stage boundaries from flooring one VU short.
        return int(math.floor(ramp_level(spec.start_vus, spec.stages or [], t) + 1e-9))
    return int(spec.vus or 0)


class ExecutionPlan(BaseModel):
    """
    Everything the scheduler needs for one run.

    Attributes:
        scenarios: Scenarios to schedule; names must be unique.
        thresholds: Metric name -> list of expressions such as "p(95)<1000".
        base_url: Target base URL handed to behaviors.
        max_vus: Resource ceiling on concurrently running VUs. Spawns beyond
            it wait for a free slot instead of being dropped.
        tick_seconds: Control loop cadence for ramp convergence and stop checks.
        request_timeout: Per-request timeout used by the default transport.
        seed: Optional seed; makes pacing, identities and behavior
            randomness reproducible per (scenario, VU).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    scenarios: List[ScenarioSpec] = Field(..., min_length=1)
    thresholds: Dict[str, List[str]] = Field(default_factory=dict)
    base_url: str = "http://localhost:8081"
    max_vus: Optional[int] = Field(default=None, ge=1)
    tick_seconds: float = Field(default=0.1, gt=0, le=1.0)
    request_timeout: float = Field(default=30.0, gt=0)
    seed: Optional[int] = None

    @field_validator("tick_seconds", "request_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value):
        return parse_duration(value)

    @field_validator("scenarios")
    @classmethod
    def _unique_names(cls, value: List[ScenarioSpec]) -> List[ScenarioSpec]:
        seen = set()
        for spec in value:
            if spec.name in seen:
                raise ValueError(f"duplicate scenario name: {spec.name}")
            seen.add(spec.name)
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def is_active(self, spec: ScenarioSpec, elapsed: float) -> bool:
        """True while the run clock is inside the scenario's active window."""
        local = elapsed - spec.start_offset
        return 0 <= local < spec.window_seconds

    def active_scenarios(self, elapsed: float) -> List[ScenarioSpec]:
        return [spec for spec in self.scenarios if self.is_active(spec, elapsed)]

    def target_vus_at(self, elapsed: float) -> Dict[str, int]:
        """Per-scenario target concurrency at run time `elapsed`."""
        return {
            spec.name: target_vus(spec, elapsed - spec.start_offset)
            for spec in self.scenarios
        }

    @property
    def nominal_seconds(self) -> float:
        """Latest scenario window end, ignoring graceful stops."""
        return max(spec.start_offset + spec.window_seconds for spec in self.scenarios)


class RunClock:
    """
    Monotonic run clock.

    elapsed() never goes backwards even if the underlying time source does.
    """

    def __init__(self, time_fn: Callable[[], float] = time.monotonic) -> None:
        self._time_fn = time_fn
        self._started_at: Optional[float] = None
        self._last = 0.0
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self._started_at = self._time_fn()
            self._last = 0.0

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def elapsed(self) -> float:
        with self._lock:
            if self._started_at is None:
                return 0.0
            now = self._time_fn() - self._started_at
            if now > self._last:
                self._last = now
            return self._last
