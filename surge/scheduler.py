"""
Scheduler: turns an ExecutionPlan into running virtual users.

Architecture:
    Scheduler.run() ticks every plan.tick_seconds
        -> ScenarioRunner.tick(elapsed) for every scenario
            -> spawn / retire / cancel VirtualUser tasks

Scenario phases:
    DORMANT   before start_offset
    RUNNING   inside the active window; population follows the executor
    STOPPING  window over (or stop requested); VUs finish their iteration,
              stragglers are cancelled once the graceful period expires
    DONE      no live VUs left

Executors:
    constant-vus       `vus` VUs for `duration`
    ramping-vus        population converges on the piecewise-linear target;
                       surplus VUs (newest first) retire and get
                       graceful_ramp_down to finish
    per-vu-iterations  `vus` VUs, `iterations` each, bounded by max_duration

Scenarios are independent: they share the transport, the VU slots and the
metrics registry, never VUs. Calling stop() halts new spawns within one
tick and drains every running scenario with its graceful_stop.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from surge.models import ExecutorKind
from surge.plan import ExecutionPlan, RunClock, target_vus
from surge.vu import ScenarioContext, VirtualUser

logger = logging.getLogger(__name__)


class ScenarioPhase(str, Enum):
    DORMANT = "dormant"
    RUNNING = "running"
    STOPPING = "stopping"
    DONE = "done"


@dataclass
class ScenarioStats:
    """Snapshot of one scenario's population."""
    name: str
    executor: str
    phase: str
    live_vus: int          # VU tasks not yet finished
    peak_vus: int          # highest live_vus seen at a tick
    spawned: int           # VUs ever started
    cancelled: int         # VUs cancelled after their graceful period
    started_at: Optional[float]   # run time the scenario went RUNNING
    finished_at: Optional[float]  # run time the scenario went DONE


def _vu_rng(seed: Optional[int], scenario: str, label: object) -> random.Random:
    if seed is None:
        return random.Random()
    # String seeds hash deterministically, unlike tuples of str.
    return random.Random(f"{seed}:{scenario}:{label}")


class ScenarioRunner:
    """
    Drives the VU population of one scenario.

    tick() is idempotent for a given elapsed time and never blocks; all
    waiting happens inside the VU tasks.
    """

    def __init__(self, ctx: ScenarioContext, *, seed: Optional[int] = None) -> None:
        self.ctx = ctx
        self.spec = ctx.spec
        self.phase = ScenarioPhase.DORMANT
        self._seed = seed
        self._tasks: Dict[VirtualUser, asyncio.Task] = {}
        self._cancelling: Set[VirtualUser] = set()
        self._next_vu_id = 1
        self._spawned = 0
        self._cancelled = 0
        self._peak = 0
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def done(self) -> bool:
        return self.phase == ScenarioPhase.DONE

    def live_vus(self) -> List[VirtualUser]:
        return [vu for vu, task in self._tasks.items() if not task.done()]

    def active_vus(self) -> List[VirtualUser]:
        """Live VUs that have not been asked to retire."""
        return [vu for vu in self.live_vus() if not vu.retiring]

    def tick(self, elapsed: float) -> None:
        self._reap()
        if self.phase == ScenarioPhase.DONE:
            return

        local = elapsed - self.spec.start_offset
        if self.phase == ScenarioPhase.DORMANT:
            if local < 0:
                return
            self.phase = ScenarioPhase.RUNNING
            self._started_at = elapsed
            logger.info(
                "Scenario %s started: executor=%s, exec=%s",
                self.name, self.spec.executor.value, self.spec.exec,
            )

        if self.phase == ScenarioPhase.RUNNING:
            if local >= self.spec.window_seconds:
                if self.spec.executor == ExecutorKind.PER_VU_ITERATIONS:
                    logger.warning(
                        "Scenario %s hit max_duration with %d VUs unfinished",
                        self.name, len(self.live_vus()),
                    )
                self._begin_stop(elapsed, self.spec.graceful_stop)
            else:
                self._converge(local, elapsed)

        self._peak = max(self._peak, len(self.live_vus()))
        # Covers ramp-down while RUNNING as well as graceful stop.
        self._enforce_deadlines(elapsed)

        if self.live_vus():
            return
        if self.phase == ScenarioPhase.STOPPING:
            self._finish(elapsed)
        elif self.spec.executor == ExecutorKind.PER_VU_ITERATIONS and self._spawned:
            # Every VU ran out of iterations before max_duration.
            self._finish(elapsed)

    def stop(self, elapsed: float) -> None:
        """Stop request: no further spawns, drain with graceful_stop."""
        if self.phase == ScenarioPhase.DORMANT:
            self._finish(elapsed)
        elif self.phase == ScenarioPhase.RUNNING:
            self._begin_stop(elapsed, self.spec.graceful_stop)

    def _converge(self, local: float, elapsed: float) -> None:
        executor = self.spec.executor
        if executor == ExecutorKind.RAMPING_VUS:
            target = target_vus(self.spec, local)
            active = self.active_vus()
            if len(active) < target:
                logger.debug(
                    "Scenario %s: spawning %d VUs (target=%d)", self.name, target - len(active), target
                )
                for _ in range(target - len(active)):
                    self._spawn()
            elif len(active) > target:
                surplus = sorted(active, key=lambda vu: vu.vu_id, reverse=True)
                deadline = elapsed + self.spec.graceful_ramp_down
                logger.debug(
                    "Scenario %s: retiring %d VUs (target=%d, deadline=%.2fs)",
                    self.name,
                    len(active) - target,
                    target,
                    deadline,
                )
                for vu in surplus[: len(active) - target]:
                    self._retire(vu, deadline)
        elif self._spawned == 0:
            # constant-vus and per-vu-iterations start their whole population once.
            max_iterations = (
                self.spec.iterations if executor == ExecutorKind.PER_VU_ITERATIONS else None
            )
            for _ in range(self.spec.vus or 0):
                self._spawn(max_iterations=max_iterations)

    def _spawn(self, *, max_iterations: Optional[int] = None) -> None:
        vu_id = self._next_vu_id
        self._next_vu_id += 1
        vu = VirtualUser(
            vu_id,
            self.ctx,
            max_iterations=max_iterations,
            rng=_vu_rng(self._seed, self.name, vu_id),
        )
        self._tasks[vu] = asyncio.create_task(vu.run(), name=f"{self.name}-vu-{vu_id}")
        self._spawned += 1

    def _retire(self, vu: VirtualUser, deadline: float) -> None:
        vu.retire()
        if vu.retire_deadline is None or deadline < vu.retire_deadline:
            vu.retire_deadline = deadline

    def _begin_stop(self, elapsed: float, grace: float) -> None:
        self.phase = ScenarioPhase.STOPPING
        live = self.live_vus()
        logger.info(
            "Scenario %s stopping: %d live VUs, grace=%.1fs", self.name, len(live), grace
        )
        for vu in live:
            self._retire(vu, elapsed + grace)

    def _enforce_deadlines(self, elapsed: float) -> None:
        for vu, task in self._tasks.items():
            if task.done() or vu.retire_deadline is None or vu in self._cancelling:
                continue
            if elapsed >= vu.retire_deadline:
                task.cancel()
                self._cancelling.add(vu)
                self._cancelled += 1

    def _reap(self) -> None:
        for vu, task in list(self._tasks.items()):
            if not task.done():
                continue
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "VU %d of %s crashed", vu.vu_id, self.name, exc_info=task.exception()
                )
            del self._tasks[vu]
            self._cancelling.discard(vu)

    def _finish(self, elapsed: float) -> None:
        if self.phase == ScenarioPhase.DONE:
            return
        self.phase = ScenarioPhase.DONE
        self._finished_at = elapsed
        logger.info(
            "Scenario %s done: spawned=%d, cancelled=%d, peak=%d",
            self.name, self._spawned, self._cancelled, self._peak,
        )

    async def shutdown(self) -> None:
        """Cancel whatever is still alive and wait for it."""
        pending = {vu: task for vu, task in self._tasks.items() if not task.done()}
        for vu, task in pending.items():
            task.cancel()
            if vu not in self._cancelling:
                self._cancelled += 1
        if pending:
            await asyncio.gather(*pending.values(), return_exceptions=True)
        self._tasks.clear()
        self._cancelling.clear()

    def stats(self) -> ScenarioStats:
        return ScenarioStats(
            name=self.name,
            executor=self.spec.executor.value,
            phase=self.phase.value,
            live_vus=len(self.live_vus()),
            peak_vus=self._peak,
            spawned=self._spawned,
            cancelled=self._cancelled,
            started_at=self._started_at,
            finished_at=self._finished_at,
        )


class Scheduler:
    """
    Runs every scenario of a plan to completion.

    Usage:
        scheduler = Scheduler(plan, runners)
        await scheduler.run()      # returns once every scenario is DONE
        scheduler.stop()           # from another task or a signal handler
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        runners: List[ScenarioRunner],
        *,
        clock: Optional[RunClock] = None,
    ) -> None:
        self.plan = plan
        self.runners = runners
        self.clock = clock or RunClock()
        self._stop_requested = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Request a global stop. Takes effect on the next tick."""
        if not self._stop_requested:
            logger.info("Stop requested")
        self._stop_requested = True

    async def run(self) -> None:
        if self._running:
            raise RuntimeError("Scheduler is already running")
        self._running = True
        self.clock.start()
        logger.info(
            "Scheduler started: scenarios=%d, nominal=%.1fs, max_vus=%s",
            len(self.runners), self.plan.nominal_seconds, self.plan.max_vus,
        )
        try:
            while True:
                elapsed = self.clock.elapsed()
                if self._stop_requested:
                    for runner in self.runners:
                        runner.stop(elapsed)
                for runner in self.runners:
                    runner.tick(elapsed)
                if all(runner.done for runner in self.runners):
                    break
                await asyncio.sleep(self.plan.tick_seconds)
        finally:
            for runner in self.runners:
                await runner.shutdown()
            self._running = False
            logger.info("Scheduler finished after %.2fs", self.clock.elapsed())

    def stats(self) -> List[ScenarioStats]:
        return [runner.stats() for runner in self.runners]
