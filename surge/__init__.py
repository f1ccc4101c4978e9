"""
surge - Declarative HTTP load tests that tell business rejections from failures.

Module-level API (recommended):
    import surge

    plan = surge.load_plan("plans/coupon.json")
    result = surge.run(plan)
    print(surge.format_report(result))

Inside an event loop, or with a fake transport:
    result = await surge.run_once(plan, transport=my_transport)

Custom behaviors:
    surge.register_behavior("checkout", build_checkout, needs_identity=True)

Advanced usage via submodules:
    from surge.metrics import MetricsRegistry, Trend
    from surge.scheduler import Scheduler, ScenarioRunner
    from surge.classifier import classify
"""

# =============================================================================
# Core API
# =============================================================================
from surge.engine import Engine, run, run_once  # noqa: F401
from surge.config import Settings, get_settings, load_plan, plan_from_dict  # noqa: F401
from surge.plan import ExecutionPlan, RunClock  # noqa: F401
from surge.report import RunResult, ScenarioSummary, format_report, write_summary  # noqa: F401

# =============================================================================
# Models
# =============================================================================
from surge.models import (  # noqa: F401
    Domain,
    ExecutorKind,
    IdentityConfig,
    IdentityStrategy,
    OutcomeCategory,
    Pacing,
    RequestOutcome,
    RequestSpec,
    ScenarioSpec,
    Stage,
)

# =============================================================================
# Building blocks
# =============================================================================
from surge.behaviors import IterationContext, register_behavior, list_behaviors  # noqa: F401
from surge.classifier import classify  # noqa: F401
from surge.identity import RandomPoolIdentity, SequentialIdentity  # noqa: F401
from surge.thresholds import ThresholdRule, ThresholdVerdict  # noqa: F401
from surge.transport import HttpxTransport, Transport  # noqa: F401
from surge.exceptions import SurgeError, SurgeConfigError, SurgeMetricError  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "run",
    "run_once",
    "Settings",
    "get_settings",
    "load_plan",
    "plan_from_dict",
    "ExecutionPlan",
    "RunClock",
    "RunResult",
    "ScenarioSummary",
    "format_report",
    "write_summary",
    "Domain",
    "ExecutorKind",
    "IdentityConfig",
    "IdentityStrategy",
    "OutcomeCategory",
    "Pacing",
    "RequestOutcome",
    "RequestSpec",
    "ScenarioSpec",
    "Stage",
    "IterationContext",
    "register_behavior",
    "list_behaviors",
    "classify",
    "RandomPoolIdentity",
    "SequentialIdentity",
    "ThresholdRule",
    "ThresholdVerdict",
    "HttpxTransport",
    "Transport",
    "SurgeError",
    "SurgeConfigError",
    "SurgeMetricError",
    "__version__",
]
