"""Tests for VU slots and the virtual-user state machine."""

import asyncio
import json
import random

import pytest

from surge.behaviors import Behavior, get_behavior
from surge.limiter import VUSlots
from surge.metrics import MetricsRegistry, OutcomeRecorder
from surge.identity import build_identity
from surge.models import RequestOutcome, RequestSpec, ScenarioSpec
from surge.vu import ScenarioContext, VirtualUser, VUState
from tests.transports.mock_transport import (
    HangingTransport,
    MockTransport,
    RaisingTransport,
    ScriptedTransport,
)


def make_ctx(transport, *, spec=None, behavior=None, slots=None):
    spec = spec or ScenarioSpec(name="s", executor="per-vu-iterations", vus=1, iterations=3)
    registry = MetricsRegistry()
    ctx = ScenarioContext(
        spec=spec,
        base_url="http://target",
        behavior=behavior or get_behavior("get"),
        transport=transport,
        recorder=OutcomeRecorder(registry, [spec.name]),
        slots=slots or VUSlots(),
        identity=build_identity(spec, rng=random.Random(0)),
    )
    return ctx, registry


class TestVUSlots:
    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            VUSlots(0)

    @pytest.mark.asyncio
    async def test_ceiling_delays_instead_of_dropping(self):
        slots = VUSlots(max_vus=2)
        release = asyncio.Event()
        entered = []

        async def holder(i):
            async with slots.hold():
                entered.append(i)
                await release.wait()

        tasks = [asyncio.create_task(holder(i)) for i in range(5)]
        await asyncio.sleep(0.01)
        stats = slots.stats()
        assert stats.active == 2
        assert stats.waiting == 3

        release.set()
        await asyncio.gather(*tasks)
        assert sorted(entered) == [0, 1, 2, 3, 4]
        final = slots.stats()
        assert final.active == 0
        assert final.total_acquired == 5
        assert final.peak_active == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_not_counted(self):
        slots = VUSlots(max_vus=1)
        release = asyncio.Event()

        async def holder():
            async with slots.hold():
                await release.wait()

        first = asyncio.create_task(holder())
        second = asyncio.create_task(holder())
        await asyncio.sleep(0.01)
        second.cancel()
        await asyncio.gather(second, return_exceptions=True)
        assert slots.stats().waiting == 0
        release.set()
        await first

    @pytest.mark.asyncio
    async def test_one_semaphore_per_instance(self):
        slots = VUSlots(max_vus=3)
        assert slots._get_semaphore() is slots._get_semaphore()
        assert VUSlots()._get_semaphore() is None


class TestVirtualUser:
    @pytest.mark.asyncio
    async def test_runs_exact_iterations(self):
        transport = MockTransport(status=200)
        ctx, registry = make_ctx(transport)
        vu = VirtualUser(1, ctx, max_iterations=3)
        await vu.run()
        assert vu.state == VUState.TERMINATED
        assert vu.iterations == 3
        assert len(transport.calls) == 3
        assert transport.calls[0] == ("GET", "http://target/", None)
        assert registry.counter("outcome_success").value == 3
        assert registry.counter("iterations").value == 3

    @pytest.mark.asyncio
    async def test_sequential_identity_in_body(self):
        spec = ScenarioSpec(
            name="coupon",
            executor="per-vu-iterations",
            vus=2,
            iterations=2,
            exec="coupon_issue",
            identity={"strategy": "sequential"},
        )
        transport = MockTransport(status=200)
        ctx, _ = make_ctx(transport, spec=spec, behavior=get_behavior("coupon_issue"))
        await VirtualUser(2, ctx, max_iterations=2).run()
        users = [json.loads(body)["userId"] for _, _, body in transport.calls]
        assert users == ["test-user-3", "test-user-4"]

    @pytest.mark.asyncio
    async def test_retire_wakes_pacing_sleep(self):
        spec = ScenarioSpec(
            name="s", executor="constant-vus", vus=1, duration=60,
            pacing={"min_seconds": 30, "max_seconds": 30},
        )
        transport = MockTransport(status=200)
        ctx, _ = make_ctx(transport, spec=spec)
        vu = VirtualUser(1, ctx)
        task = asyncio.create_task(vu.run())
        await asyncio.sleep(0.02)
        assert vu.state == VUState.SLEEPING
        vu.retire()
        await asyncio.wait_for(task, timeout=1.0)
        assert vu.state == VUState.TERMINATED
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_in_flight_counts_interrupted_not_system_error(self):
        transport = HangingTransport()
        ctx, registry = make_ctx(transport)
        vu = VirtualUser(1, ctx, max_iterations=3)
        task = asyncio.create_task(vu.run())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert vu.state == VUState.TERMINATED
        assert registry.counter("iterations_interrupted").value == 1
        assert registry.counter("outcome_system_error").value == 0
        assert registry.counter("http_reqs").value == 0

    @pytest.mark.asyncio
    async def test_transport_exception_becomes_system_error(self):
        ctx, registry = make_ctx(RaisingTransport())
        await VirtualUser(1, ctx, max_iterations=2).run()
        assert registry.counter("outcome_system_error").value == 2
        assert registry.counter("status_other").value == 2

    @pytest.mark.asyncio
    async def test_behavior_failure_is_recovered(self):
        calls = []

        def flaky(ctx):
            calls.append(ctx.iteration)
            if ctx.iteration == 0:
                raise RuntimeError("boom")
            return RequestSpec(method="GET", url=f"{ctx.base_url}/ok")

        transport = MockTransport(status=200)
        ctx, registry = make_ctx(transport, behavior=Behavior(name="flaky", build=flaky))
        await VirtualUser(1, ctx, max_iterations=3).run()
        assert calls == [0, 1, 2]
        assert registry.counter("iteration_errors").value == 1
        assert registry.counter("outcome_success").value == 2

    @pytest.mark.asyncio
    async def test_waits_for_slot_in_spawned_state(self):
        slots = VUSlots(max_vus=1)
        transport = MockTransport(status=200)
        ctx, _ = make_ctx(transport, slots=slots)
        release = asyncio.Event()

        async def occupy():
            async with slots.hold():
                await release.wait()

        blocker = asyncio.create_task(occupy())
        await asyncio.sleep(0)
        vu = VirtualUser(1, ctx, max_iterations=1)
        task = asyncio.create_task(vu.run())
        await asyncio.sleep(0.01)
        assert vu.state == VUState.SPAWNED
        assert transport.calls == []
        release.set()
        await asyncio.gather(blocker, task)
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_unparseable_body_keeps_vu_alive(self):
        transport = MockTransport(status=400, body="[" * 5000 + "]" * 5000)
        ctx, registry = make_ctx(transport)
        vu = VirtualUser(1, ctx, max_iterations=3)
        await vu.run()
        assert len(transport.calls) == 3
        assert registry.counter("outcome_biz_unknown").value == 3
        assert registry.counter("iterations").value == 3

    @pytest.mark.asyncio
    async def test_failure_after_send_is_recovered(self):
        def broken_follow_up(ctx, outcome, category):
            raise RuntimeError("boom")

        behavior = Behavior(
            name="broken",
            build=lambda ctx: RequestSpec(method="GET", url=f"{ctx.base_url}/ok"),
            follow_up=broken_follow_up,
        )
        transport = MockTransport(status=200)
        ctx, registry = make_ctx(transport, behavior=behavior)
        vu = VirtualUser(1, ctx, max_iterations=3)
        await vu.run()
        assert vu.iterations == 3
        assert len(transport.calls) == 3
        assert registry.counter("http_reqs").value == 3
        assert registry.counter("iteration_errors").value == 3
        assert registry.counter("iterations").value == 0


class TestFollowUpRequests:
    def spec(self, exec_name, **params) -> ScenarioSpec:
        return ScenarioSpec(
            name="s",
            executor="per-vu-iterations",
            vus=1,
            iterations=1,
            exec=exec_name,
            identity={"strategy": "random", "pool_size": 1},
            domain="order",
            params=params,
        )

    @pytest.mark.asyncio
    async def test_successful_order_fetches_detail(self):
        transport = ScriptedTransport(
            lambda i: RequestOutcome(status=200, body='{"orderId": 42}' if i == 0 else "{}")
        )
        ctx, registry = make_ctx(
            transport,
            spec=self.spec("order_payment", detail_ratio=1.0),
            behavior=get_behavior("order_payment"),
        )
        await VirtualUser(1, ctx, max_iterations=1).run()
        assert [(m, u) for m, u, _ in transport.calls] == [
            ("POST", "http://target/api/orders"),
            ("GET", "http://target/api/orders/42"),
        ]
        assert registry.counter("http_reqs").value == 2
        assert registry.counter("outcome_success").value == 2
        assert registry.counter("iterations").value == 1

    @pytest.mark.asyncio
    async def test_rejected_order_has_no_detail(self):
        transport = MockTransport(status=400, body='{"code": "PAY001", "message": "잔액 부족"}')
        ctx, registry = make_ctx(
            transport,
            spec=self.spec("order_payment", detail_ratio=1.0),
            behavior=get_behavior("order_payment"),
        )
        await VirtualUser(1, ctx, max_iterations=1).run()
        assert len(transport.calls) == 1
        assert registry.counter("outcome_biz_insufficient_balance").value == 1

    @pytest.mark.asyncio
    async def test_order_without_order_id_is_not_success(self):
        transport = MockTransport(status=200, body="{}")
        ctx, registry = make_ctx(
            transport,
            spec=self.spec("order_payment", detail_ratio=1.0),
            behavior=get_behavior("order_payment"),
        )
        await VirtualUser(1, ctx, max_iterations=1).run()
        assert len(transport.calls) == 1
        assert registry.counter("outcome_system_error").value == 1

    @pytest.mark.asyncio
    async def test_charge_followed_by_balance_check(self):
        transport = ScriptedTransport(
            lambda i: RequestOutcome(status=200, body='{"currentBalance": 5000}' if i == 0 else "{}")
        )
        ctx, registry = make_ctx(
            transport,
            spec=self.spec("balance_charge", balance_check_ratio=1.0),
            behavior=get_behavior("balance_charge"),
        )
        await VirtualUser(1, ctx, max_iterations=1).run()
        assert [(m, u) for m, u, _ in transport.calls] == [
            ("POST", "http://target/api/users/test-user-1/balance/charge"),
            ("GET", "http://target/api/users/test-user-1/balance"),
        ]
        assert registry.counter("outcome_success").value == 2

    @pytest.mark.asyncio
    async def test_balance_check_skipped_at_zero_ratio(self):
        transport = MockTransport(status=200, body='{"currentBalance": 1}')
        ctx, registry = make_ctx(
            transport,
            spec=self.spec("balance_charge", balance_check_ratio=0.0),
            behavior=get_behavior("balance_charge"),
        )
        await VirtualUser(1, ctx, max_iterations=1).run()
        assert len(transport.calls) == 1
        assert registry.counter("iterations").value == 1
