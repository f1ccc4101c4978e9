"""
Load engine: one plan in, one RunResult out.

Setup (fails fast, before any VU starts):
    parse thresholds -> register the standard metric set -> check every
    threshold against the registry -> resolve behaviors and identities

Run:
    Scheduler ticks the scenarios until all are DONE (or stop() drains them)

Finish:
    final snapshot -> threshold verdicts -> RunResult

Usage:
    result = surge.run(plan)                       # blocking
    result = await surge.run_once(plan)            # inside an event loop
    result = await surge.run_once(plan, transport=FakeTransport())
"""

from __future__ import annotations

import asyncio
import logging
import random
import signal
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from surge.behaviors import Behavior, resolve_behavior
from surge.identity import IdentityGenerator, build_identity
from surge.limiter import VUSlots
from surge.metrics.recorder import ITERATIONS, ITERATIONS_INTERRUPTED, OutcomeRecorder
from surge.metrics.registry import MetricsRegistry, metric_key
from surge.models import ScenarioSpec
from surge.plan import ExecutionPlan, RunClock
from surge.report import RunResult, ScenarioSummary
from surge.scheduler import ScenarioRunner, Scheduler
from surge.thresholds import (
    ThresholdRule,
    all_passed,
    evaluate,
    parse_thresholds,
    required_percentiles,
    validate_rules,
)
from surge.transport import HttpxTransport, Transport
from surge.vu import ScenarioContext

logger = logging.getLogger(__name__)


class Engine:
    """
    Owns everything one run needs: registry, recorder, slots, runners.

    Constructing an Engine validates the plan against the metric set, so a
    bad threshold or unknown behavior raises here, not mid-run. An Engine
    runs once.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        *,
        transport: Optional[Transport] = None,
        behaviors: Optional[Dict[str, Behavior]] = None,
        clock: Optional[RunClock] = None,
    ) -> None:
        self.plan = plan
        self.registry = MetricsRegistry()
        self.recorder = OutcomeRecorder(self.registry, [s.name for s in plan.scenarios])
        self.rules: List[ThresholdRule] = parse_thresholds(plan.thresholds)
        validate_rules(self.rules, self.registry)

        self.slots = VUSlots(plan.max_vus)
        self._transport = transport
        self.clock = clock or RunClock()
        self.runners: List[ScenarioRunner] = []
        # (spec, behavior, identity) per scenario, resolved before any VU exists.
        self._bindings: List[Tuple[ScenarioSpec, Behavior, Optional[IdentityGenerator]]] = []
        for spec in plan.scenarios:
            identity_rng = (
                random.Random(f"{plan.seed}:{spec.name}:identity")
                if plan.seed is not None
                else None
            )
            self._bindings.append(
                (spec, resolve_behavior(spec, behaviors), build_identity(spec, rng=identity_rng))
            )
        self.scheduler: Optional[Scheduler] = None
        self._stop_requested = False

    def stop(self) -> None:
        """Drain every scenario with its graceful_stop and finish the run."""
        self._stop_requested = True
        if self.scheduler is not None:
            self.scheduler.stop()

    async def run(self, *, handle_signals: bool = False) -> RunResult:
        if self.scheduler is not None:
            raise RuntimeError("Engine instances run once")

        transport = self._transport
        owned: Optional[HttpxTransport] = None
        if transport is None:
            owned = HttpxTransport(
                timeout=self.plan.request_timeout,
                max_connections=self.plan.max_vus,
            )
            transport = owned
        self.runners = [
            ScenarioRunner(
                ScenarioContext(
                    spec=spec,
                    base_url=self.plan.base_url,
                    behavior=behavior,
                    transport=transport,
                    recorder=self.recorder,
                    slots=self.slots,
                    identity=identity,
                ),
                seed=self.plan.seed,
            )
            for spec, behavior, identity in self._bindings
        ]
        self.scheduler = Scheduler(self.plan, self.runners, clock=self.clock)
        if self._stop_requested:
            self.scheduler.stop()

        installed = self._install_signal_handlers() if handle_signals else []
        started_at = datetime.now(timezone.utc)
        logger.info(
            "Run started: base_url=%s, scenarios=%s, thresholds=%d",
            self.plan.base_url,
            ",".join(s.name for s in self.plan.scenarios),
            len(self.rules),
        )
        try:
            await self.scheduler.run()
        finally:
            self._remove_signal_handlers(installed)
            if owned is not None:
                await owned.aclose()

        duration = self.clock.elapsed()
        result = self._build_result(started_at, datetime.now(timezone.utc), duration)
        logger.info(
            "Run finished: requests=%d, duration=%.2fs, passed=%s",
            result.total_requests, duration, result.passed,
        )
        return result

    def _build_result(
        self, started_at: datetime, finished_at: datetime, duration: float
    ) -> RunResult:
        snapshot = self.registry.snapshot(
            duration_seconds=duration,
            percentiles=required_percentiles(self.rules),
        )
        verdicts = evaluate(self.rules, snapshot)
        for verdict in verdicts:
            if not verdict.passed:
                logger.warning(
                    "Threshold failed: %s %s (observed %.4f)",
                    verdict.metric, verdict.expression, verdict.observed,
                )

        scenarios = []
        for runner in self.runners:
            stats = runner.stats()
            tags = {"scenario": runner.name}
            scenarios.append(
                ScenarioSummary(
                    name=runner.name,
                    executor=stats.executor,
                    iterations=int(snapshot.get(metric_key(ITERATIONS, tags), {}).get("count", 0)),
                    interrupted=int(
                        snapshot.get(metric_key(ITERATIONS_INTERRUPTED, tags), {}).get("count", 0)
                    ),
                    peak_vus=stats.peak_vus,
                    spawned_vus=stats.spawned,
                    cancelled_vus=stats.cancelled,
                    started_at=stats.started_at,
                    finished_at=stats.finished_at,
                )
            )

        return RunResult(
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=duration,
            metrics=snapshot,
            thresholds=verdicts,
            passed=all_passed(verdicts),
            scenarios=scenarios,
            aborted=self._stop_requested,
        )

    def _install_signal_handlers(self) -> List[int]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(sig)
        return installed

    def _remove_signal_handlers(self, installed: List[int]) -> None:
        if not installed:
            return
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: int) -> None:
        logger.warning("Received signal %d, stopping gracefully", sig)
        self.stop()


async def run_once(
    plan: ExecutionPlan,
    *,
    transport: Optional[Transport] = None,
    behaviors: Optional[Dict[str, Behavior]] = None,
    clock: Optional[RunClock] = None,
    handle_signals: bool = False,
) -> RunResult:
    """
    Execute a plan once and return its result.

    Args:
        plan: Validated execution plan.
        transport: Request sender; defaults to an HttpxTransport closed at the end.
        behaviors: Behavior table overriding the global registry.
        clock: Run clock (inject a fake time source in tests).
        handle_signals: Turn SIGINT/SIGTERM into a graceful stop.

    Raises:
        SurgeConfigError: Unknown behavior, bad identity setup or a threshold
            on an unknown metric.
        SurgeMetricError: A threshold aggregate the sink type cannot produce.
    """
    engine = Engine(plan, transport=transport, behaviors=behaviors, clock=clock)
    return await engine.run(handle_signals=handle_signals)


def run(
    plan: ExecutionPlan,
    *,
    transport: Optional[Transport] = None,
    behaviors: Optional[Dict[str, Behavior]] = None,
    clock: Optional[RunClock] = None,
    handle_signals: bool = False,
) -> RunResult:
    """Blocking wrapper around run_once()."""
    return asyncio.run(
        run_once(
            plan,
            transport=transport,
            behaviors=behaviors,
            clock=clock,
            handle_signals=handle_signals,
        )
    )
