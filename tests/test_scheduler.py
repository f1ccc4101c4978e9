"""
Tests for ScenarioRunner and Scheduler.

Runner tests drive tick() with explicit run times, so population checks are
exact. Scheduler tests run the real control loop with sub-second profiles.
"""

import asyncio

import pytest

from surge.behaviors import get_behavior
from surge.limiter import VUSlots
from surge.metrics import MetricsRegistry, OutcomeRecorder
from surge.models import ScenarioSpec
from surge.plan import ExecutionPlan, target_vus
from surge.scheduler import ScenarioPhase, ScenarioRunner, Scheduler
from surge.vu import ScenarioContext
from tests.transports.mock_transport import HangingTransport, MockTransport


async def settle(rounds: int = 5) -> None:
    """Let freshly spawned or cancelled VU tasks reach their next await."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_runner(spec, transport, *, max_vus=None):
    registry = MetricsRegistry()
    ctx = ScenarioContext(
        spec=spec,
        base_url="http://target",
        behavior=get_behavior("get"),
        transport=transport,
        recorder=OutcomeRecorder(registry, [spec.name]),
        slots=VUSlots(max_vus),
    )
    return ScenarioRunner(ctx, seed=1), registry


RAMP = ScenarioSpec.model_validate(
    {
        "name": "ramp",
        "executor": "ramping-vus",
        "stages": [{"duration": 10, "target": 10}, {"duration": 10, "target": 0}],
        "graceful_ramp_down": 2,
        "graceful_stop": 1,
    }
)


class TestRampingRunner:
    @pytest.mark.asyncio
    async def test_population_tracks_target(self):
        runner, _ = make_runner(RAMP, HangingTransport())
        try:
            for step in range(0, 41):
                t = step * 0.5
                runner.tick(t)
                await settle()
                assert len(runner.active_vus()) == target_vus(RAMP, t), t
        finally:
            await runner.shutdown()

    @pytest.mark.asyncio
    async def test_ramp_down_retires_newest_then_cancels_after_grace(self):
        runner, registry = make_runner(RAMP, HangingTransport())
        try:
            runner.tick(10.0)
            await settle()
            assert len(runner.live_vus()) == 10

            runner.tick(15.0)  # target 5
            await settle()
            assert len(runner.active_vus()) == 5
            assert len(runner.live_vus()) == 10
            assert sorted(vu.vu_id for vu in runner.active_vus()) == [1, 2, 3, 4, 5]

            runner.tick(16.9)  # grace not over yet; target 3
            await settle()
            assert len(runner.live_vus()) == 10

            runner.tick(17.0)  # first five hit their deadline
            await settle()
            runner.tick(17.0)
            assert len(runner.live_vus()) == 5
            assert registry.counter("iterations_interrupted").value == 5
            assert registry.counter("outcome_system_error").value == 0
            assert runner.phase == ScenarioPhase.RUNNING
        finally:
            await runner.shutdown()

    @pytest.mark.asyncio
    async def test_window_end_drains_with_graceful_stop(self):
        runner, registry = make_runner(RAMP, HangingTransport())
        runner.tick(10.0)
        await settle()
        runner.tick(20.0)
        assert runner.phase == ScenarioPhase.STOPPING
        runner.tick(20.5)
        await settle()
        assert len(runner.live_vus()) == 10

        runner.tick(21.0)
        await settle()
        runner.tick(21.1)
        assert runner.phase == ScenarioPhase.DONE
        assert registry.counter("iterations_interrupted").value == 10
        stats = runner.stats()
        assert stats.peak_vus == 10
        assert stats.cancelled == 10


class TestConstantRunner:
    @pytest.mark.asyncio
    async def test_spawns_once_and_finishes_iteration_on_stop(self):
        spec = ScenarioSpec(
            name="steady", executor="constant-vus", vus=4, duration=5,
            start_offset=2, graceful_stop=10,
        )
        transport = MockTransport(status=200, delay=0.01)
        runner, registry = make_runner(spec, transport)
        try:
            runner.tick(1.0)
            assert runner.phase == ScenarioPhase.DORMANT
            assert runner.live_vus() == []

            runner.tick(2.0)
            assert runner.phase == ScenarioPhase.RUNNING
            runner.tick(3.0)
            assert len(runner.live_vus()) == 4
            await asyncio.sleep(0.05)

            runner.tick(7.0)
            assert runner.phase == ScenarioPhase.STOPPING
            await asyncio.sleep(0.05)
            runner.tick(7.1)
            assert runner.phase == ScenarioPhase.DONE
            assert registry.counter("iterations_interrupted").value == 0
            assert registry.counter("outcome_success").value >= 4
            assert runner.stats().spawned == 4
        finally:
            await runner.shutdown()

    @pytest.mark.asyncio
    async def test_stop_before_start_never_spawns(self):
        spec = ScenarioSpec(name="late", executor="constant-vus", vus=2, duration=5, start_offset=10)
        runner, _ = make_runner(spec, MockTransport())
        runner.stop(1.0)
        runner.tick(11.0)
        assert runner.phase == ScenarioPhase.DONE
        assert runner.stats().spawned == 0


class TestPerVuIterationsRunner:
    @pytest.mark.asyncio
    async def test_max_duration_forces_termination(self):
        spec = ScenarioSpec(
            name="bounded", executor="per-vu-iterations", vus=3, iterations=5,
            max_duration=1, graceful_stop=0.5,
        )
        runner, registry = make_runner(spec, HangingTransport())
        runner.tick(0.0)
        await settle()
        runner.tick(1.0)
        assert runner.phase == ScenarioPhase.STOPPING
        runner.tick(1.5)
        await settle()
        runner.tick(1.6)
        assert runner.phase == ScenarioPhase.DONE
        assert registry.counter("iterations_interrupted").value == 3


def plan_with(*scenarios, **kwargs) -> ExecutionPlan:
    return ExecutionPlan(scenarios=list(scenarios), tick_seconds=0.01, **kwargs)


def runners_for(plan, transport):
    registry = MetricsRegistry()
    recorder = OutcomeRecorder(registry, [s.name for s in plan.scenarios])
    slots = VUSlots(plan.max_vus)
    runners = [
        ScenarioRunner(
            ScenarioContext(
                spec=spec,
                base_url=plan.base_url,
                behavior=get_behavior("get"),
                transport=transport,
                recorder=recorder,
                slots=slots,
            )
        )
        for spec in plan.scenarios
    ]
    return runners, registry, slots


class TestScheduler:
    @pytest.mark.asyncio
    async def test_independent_scenarios_with_offset(self):
        first = ScenarioSpec(name="first", executor="per-vu-iterations", vus=2, iterations=3)
        second = ScenarioSpec(
            name="second", executor="per-vu-iterations", vus=2, iterations=2, start_offset=0.1
        )
        plan = plan_with(first, second)
        transport = MockTransport(status=200)
        runners, registry, _ = runners_for(plan, transport)
        await asyncio.wait_for(Scheduler(plan, runners).run(), timeout=5)

        assert registry.counter("iterations", {"scenario": "first"}).value == 6
        assert registry.counter("iterations", {"scenario": "second"}).value == 4
        stats = {s.name: s for s in (r.stats() for r in runners)}
        assert stats["second"].started_at >= 0.1

    @pytest.mark.asyncio
    async def test_global_stop_drains_and_cancels(self):
        spec = ScenarioSpec(
            name="endless", executor="constant-vus", vus=3, duration=60, graceful_stop=0.05
        )
        plan = plan_with(spec)
        runners, registry, _ = runners_for(plan, HangingTransport())
        scheduler = Scheduler(plan, runners)
        asyncio.get_running_loop().call_later(0.05, scheduler.stop)
        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert runners[0].done
        assert registry.counter("iterations_interrupted").value == 3
        assert registry.counter("outcome_system_error").value == 0

    @pytest.mark.asyncio
    async def test_resource_ceiling_delays_spawns(self):
        spec = ScenarioSpec(name="capped", executor="per-vu-iterations", vus=6, iterations=2)
        plan = plan_with(spec, max_vus=2)
        transport = MockTransport(status=200, delay=0.01)
        runners, registry, slots = runners_for(plan, transport)
        await asyncio.wait_for(Scheduler(plan, runners).run(), timeout=5)

        assert registry.counter("outcome_success").value == 12
        assert transport.peak_in_flight <= 2
        assert slots.stats().peak_active == 2

    @pytest.mark.asyncio
    async def test_run_twice_rejected_while_running(self):
        spec = ScenarioSpec(name="s", executor="per-vu-iterations", vus=1, iterations=1)
        plan = plan_with(spec)
        runners, _, _ = runners_for(plan, MockTransport(delay=0.05))
        scheduler = Scheduler(plan, runners)
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.01)
        with pytest.raises(RuntimeError):
            await scheduler.run()
        await task
