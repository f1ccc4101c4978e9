"""
Virtual user: one simulated actor looping over a behavior.

Lifecycle:
    SPAWNED     task created, waiting for a VU slot
    RUNNING     building, sending, classifying and recording a request
    SLEEPING    pacing between iterations
    TERMINATED  loop finished (retired, out of iterations, or cancelled)

Each iteration: build request -> await transport -> classify -> record ->
optional follow-up request (same steps) -> pace. The only suspension points
are the transport calls and the pacing sleep. A failure anywhere in an
iteration is logged and counted in iteration_errors; the loop continues.

retire() lets the current iteration finish and cuts a pacing sleep short;
cancelling the task abandons an in-flight request, which is counted as an
interrupted iteration and never as a system error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from surge.behaviors import Behavior, IterationContext
from surge.classifier import classify
from surge.identity import IdentityGenerator
from surge.limiter import VUSlots
from surge.metrics.recorder import OutcomeRecorder
from surge.models import NETWORK_FAILURE_STATUS, RequestOutcome, RequestSpec, ScenarioSpec
from surge.transport import Transport

logger = logging.getLogger(__name__)


class VUState(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    SLEEPING = "sleeping"
    TERMINATED = "terminated"


@dataclass
class ScenarioContext:
    """Collaborators shared by every VU of one scenario."""

    spec: ScenarioSpec
    base_url: str
    behavior: Behavior
    transport: Transport
    recorder: OutcomeRecorder
    slots: VUSlots
    identity: Optional[IdentityGenerator] = None


class VirtualUser:
    """
    One VU. Owned by its scenario runner; never shared across scenarios.

    Args:
        vu_id: 1-based number, unique within the scenario.
        ctx: Shared scenario collaborators.
        max_iterations: Stop after this many iterations (None = until retired).
        rng: Random source for pacing and behaviors.
    """

    def __init__(
        self,
        vu_id: int,
        ctx: ScenarioContext,
        *,
        max_iterations: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.vu_id = vu_id
        self.ctx = ctx
        self.max_iterations = max_iterations
        self.state = VUState.SPAWNED
        self.iterations = 0
        # Scheduler bookkeeping: when a retiring VU gets cancelled.
        self.retire_deadline: Optional[float] = None
        self._rng = rng or random.Random()
        self._retire = asyncio.Event()

    @property
    def retiring(self) -> bool:
        return self._retire.is_set()

    @property
    def done(self) -> bool:
        return self.state == VUState.TERMINATED

    def retire(self) -> None:
        """Stop after the current iteration; wakes a sleeping VU immediately."""
        self._retire.set()

    async def run(self) -> None:
        try:
            async with self.ctx.slots.hold():
                if self._retire.is_set():
                    return
                self.state = VUState.RUNNING
                while not self._retire.is_set():
                    if self.max_iterations is not None and self.iterations >= self.max_iterations:
                        break
                    await self._iterate()
                    if self._retire.is_set():
                        break
                    if self.max_iterations is not None and self.iterations >= self.max_iterations:
                        break
                    await self._pace()
        finally:
            self.state = VUState.TERMINATED

    async def _iterate(self) -> None:
        spec = self.ctx.spec
        iteration = self.iterations
        self.iterations += 1

        user_id = None
        if self.ctx.identity is not None:
            number = self.ctx.identity.next_id(self.vu_id, iteration)
            user_id = f"{spec.identity.prefix}{number}" if spec.identity else str(number)

        behavior = self.ctx.behavior
        iteration_ctx = IterationContext(
            scenario=spec,
            base_url=self.ctx.base_url,
            vu_id=self.vu_id,
            iteration=iteration,
            user_id=user_id,
            rng=self._rng,
        )
        try:
            request: Optional[RequestSpec] = behavior.build(iteration_ctx)
        except Exception:
            logger.exception(
                "Behavior %s failed (scenario=%s, vu=%d)", spec.exec, spec.name, self.vu_id
            )
            self.ctx.recorder.record_iteration_error(spec.name)
            return

        follow_up = behavior.follow_up
        require_field = behavior.success_field
        while request is not None:
            sent = request
            outcome = await self._send(sent)
            try:
                category = classify(outcome, spec.domain, require_field=require_field)
                if category.is_business:
                    logger.debug(
                        "scenario=%s user=%s outcome=%s", spec.name, user_id, category.value
                    )
                self.ctx.recorder.record(spec.name, outcome, category)
                request = follow_up(iteration_ctx, outcome, category) if follow_up else None
            except Exception:
                logger.exception(
                    "Iteration failed after %s %s (scenario=%s, vu=%d)",
                    sent.method, sent.url, spec.name, self.vu_id,
                )
                self.ctx.recorder.record_iteration_error(spec.name)
                return
            # At most one follow-up, checked by status only.
            follow_up = None
            require_field = None
        self.ctx.recorder.record_iteration(spec.name)

    async def _send(self, request: RequestSpec) -> RequestOutcome:
        try:
            return await self.ctx.transport.send_request(
                request.method, request.url, request.body, request.headers
            )
        except asyncio.CancelledError:
            self.ctx.recorder.record_interrupted(self.ctx.spec.name)
            raise
        except Exception as exc:
            # Transports should report failures as status 0; treat a raise the same way.
            logger.warning("Transport raised for %s %s: %s", request.method, request.url, exc)
            return RequestOutcome(status=NETWORK_FAILURE_STATUS, error=str(exc))

    async def _pace(self) -> None:
        pacing = self.ctx.spec.pacing
        delay = self._rng.uniform(pacing.min_seconds, pacing.max_seconds)
        if delay <= 0:
            # Yield so a zero-think-time VU cannot starve the control loop.
            await asyncio.sleep(0)
            return
        self.state = VUState.SLEEPING
        try:
            await asyncio.wait_for(self._retire.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        finally:
            if self.state == VUState.SLEEPING:
                self.state = VUState.RUNNING
