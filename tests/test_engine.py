"""End-to-end runs against fake transports."""

import asyncio

import pytest

import surge
from surge.engine import Engine, run_once
from surge.exceptions import SurgeConfigError, SurgeMetricError
from surge.models import OutcomeCategory
from surge.plan import ExecutionPlan, RunClock
from tests.transports.mock_transport import DuplicateRejectingTransport, MockTransport


def make_plan(scenarios, thresholds=None, **kwargs) -> ExecutionPlan:
    return ExecutionPlan.model_validate(
        {
            "base_url": "http://target",
            "tick_seconds": 0.01,
            "scenarios": scenarios,
            "thresholds": thresholds or {},
            **kwargs,
        }
    )


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_per_vu_iterations_all_success(self):
        plan = make_plan(
            [
                {
                    "name": "sequential",
                    "executor": "per-vu-iterations",
                    "vus": 10,
                    "iterations": 10,
                    "exec": "coupon_issue",
                    "identity": {"strategy": "sequential"},
                    "domain": "coupon",
                }
            ],
            thresholds={
                "errors": ["rate<0.01"],
                "system_error_rate": ["rate==0"],
                "http_req_duration": ["p(95)<50"],
                "outcome_success": ["count==100"],
            },
        )
        transport = DuplicateRejectingTransport(latency_ms=20.0)
        result = await asyncio.wait_for(run_once(plan, transport=transport), timeout=10)

        assert result.category_count(OutcomeCategory.SUCCESS) == 100
        for category in OutcomeCategory:
            if category is not OutcomeCategory.SUCCESS:
                assert result.category_count(category) == 0, category
        assert result.total_requests == 100
        assert len(transport.seen) == 100
        assert result.passed
        assert all(v.passed for v in result.thresholds)
        assert result.scenarios[0].iterations == 100
        assert result.scenarios[0].interrupted == 0
        assert not result.aborted

    @pytest.mark.asyncio
    async def test_ramping_small_pool_produces_duplicates(self):
        plan = make_plan(
            [
                {
                    "name": "contention",
                    "executor": "ramping-vus",
                    "stages": [
                        {"duration": "100ms", "target": 10},
                        {"duration": "300ms", "target": 10},
                    ],
                    "exec": "coupon_issue",
                    "identity": {"strategy": "random", "pool_size": 5},
                    "domain": "coupon",
                    "graceful_stop": "1s",
                }
            ],
            seed=42,
        )
        transport = DuplicateRejectingTransport(delay=0.001)
        result = await asyncio.wait_for(run_once(plan, transport=transport), timeout=10)

        assert result.category_count(OutcomeCategory.BIZ_DUPLICATE) > 0
        assert result.category_count(OutcomeCategory.SYSTEM_ERROR) == 0
        assert result.category_count(OutcomeCategory.SUCCESS) <= 5
        assert result.metric("status_409")["count"] == result.category_count(
            OutcomeCategory.BIZ_DUPLICATE
        )
        assert result.scenarios[0].peak_vus == 10

    @pytest.mark.asyncio
    async def test_failing_threshold_fails_run(self):
        plan = make_plan(
            [{"name": "broken", "executor": "per-vu-iterations", "vus": 2, "iterations": 5}],
            thresholds={"errors": ["rate<0.05"]},
        )
        result = await run_once(plan, transport=MockTransport(status=503))

        assert not result.passed
        assert result.category_count(OutcomeCategory.SYSTEM_ERROR) == 10
        [verdict] = result.thresholds
        assert verdict.observed == 1.0

    @pytest.mark.asyncio
    async def test_business_rejections_are_not_system_errors(self):
        body = '{"code": "PAY001", "message": "잔액이 부족합니다"}'
        plan = make_plan(
            [
                {
                    "name": "orders",
                    "executor": "per-vu-iterations",
                    "vus": 1,
                    "iterations": 3,
                    "exec": "order_payment",
                    "identity": {"strategy": "random", "pool_size": 100},
                    "domain": "order",
                }
            ],
            thresholds={"system_error_rate": ["rate<0.01"]},
        )
        result = await run_once(plan, transport=MockTransport(status=400, body=body))

        assert result.category_count(OutcomeCategory.BIZ_INSUFFICIENT_BALANCE) == 3
        assert result.passed

    @pytest.mark.asyncio
    async def test_tagged_threshold_percentile_included(self):
        plan = make_plan(
            [{"name": "s", "executor": "per-vu-iterations", "vus": 1, "iterations": 4}],
            thresholds={"http_req_duration{scenario:s}": ["p(97.5)<100"]},
        )
        result = await run_once(plan, transport=MockTransport(latency_ms=10.0))
        assert "p(97.5)" in result.metric("http_req_duration{scenario:s}")
        assert result.passed

    @pytest.mark.asyncio
    async def test_engine_stop_marks_aborted(self):
        plan = make_plan(
            [{"name": "long", "executor": "constant-vus", "vus": 2, "duration": 30,
              "graceful_stop": 0.1}]
        )
        engine = Engine(plan, transport=MockTransport(delay=0.005))
        asyncio.get_running_loop().call_later(0.05, engine.stop)
        result = await asyncio.wait_for(engine.run(), timeout=5)

        assert result.aborted
        assert result.duration_seconds < 5
        assert result.total_requests > 0

    def test_blocking_run_uses_given_clock(self):
        plan = make_plan(
            [{"name": "s", "executor": "per-vu-iterations", "vus": 1, "iterations": 2}]
        )
        clock = RunClock()
        result = surge.run(plan, transport=MockTransport(), clock=clock)
        assert clock.started
        assert result.total_requests == 2


class TestSetupFailures:
    def test_unknown_behavior(self):
        plan = make_plan([{"name": "x", "executor": "constant-vus", "vus": 1, "duration": 1,
                           "exec": "nope"}])
        with pytest.raises(SurgeConfigError) as exc_info:
            Engine(plan, transport=MockTransport())
        assert exc_info.value.details["field"] == "x.exec"

    def test_behavior_needs_identity(self):
        plan = make_plan([{"name": "x", "executor": "constant-vus", "vus": 1, "duration": 1,
                           "exec": "coupon_issue"}])
        with pytest.raises(SurgeConfigError) as exc_info:
            Engine(plan, transport=MockTransport())
        assert exc_info.value.details["field"] == "x.identity"

    def test_threshold_on_unknown_metric(self):
        plan = make_plan(
            [{"name": "x", "executor": "constant-vus", "vus": 1, "duration": 1}],
            thresholds={"latency_typo": ["p(95)<1"]},
        )
        with pytest.raises(SurgeConfigError):
            Engine(plan, transport=MockTransport())

    def test_threshold_aggregate_mismatch(self):
        plan = make_plan(
            [{"name": "x", "executor": "constant-vus", "vus": 1, "duration": 1}],
            thresholds={"errors": ["p(95)<1"]},
        )
        with pytest.raises(SurgeMetricError):
            Engine(plan, transport=MockTransport())

    def test_no_request_sent_on_setup_failure(self):
        transport = MockTransport()
        plan = make_plan(
            [{"name": "x", "executor": "per-vu-iterations", "vus": 1, "iterations": 1}],
            thresholds={"missing": ["count>0"]},
        )
        with pytest.raises(SurgeConfigError):
            surge.run(plan, transport=transport)
        assert transport.calls == []
