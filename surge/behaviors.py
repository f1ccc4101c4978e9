"""
Virtual-user behaviors.

A behavior turns one iteration's context into the request a VU sends. A
scenario names its behavior with `exec`; the name is resolved here before
the run starts.

Built-in behaviors:
- get: GET {base_url}{params.path}
- coupon_issue: POST /api/coupons/{params.coupon_id}/issue with {"userId"}
- order_payment: POST /api/orders with {"userId", "couponId"}; a success
  must carry "orderId", and params.detail_ratio (default 0.1) of successful
  orders are followed by GET /api/orders/{orderId}
- balance_charge: POST /api/users/{userId}/balance/charge with {"amount"}; a
  success must carry "currentBalance", and params.balance_check_ratio
  (default 0.3) of charges are followed by GET /api/users/{userId}/balance

An iteration sends the built request and, when the behavior has a follow_up,
at most one more request chosen from the first one's outcome. Both are
classified and recorded.

Register your own:
    surge.register_behavior("checkout", build_checkout, needs_identity=True)
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from surge.exceptions import SurgeConfigError
from surge.classifier import extract_field
from surge.models import OutcomeCategory, RequestOutcome, RequestSpec, ScenarioSpec

JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass(frozen=True)
class IterationContext:
    """
    What a behavior knows about the iteration it builds a request for.

    Attributes:
        scenario: Owning scenario.
        base_url: Target base URL without trailing slash.
        vu_id: 1-based VU number, unique within the scenario.
        iteration: 0-based iteration number of this VU.
        user_id: Formatted identity, or None when the scenario has none.
        rng: Per-VU random source.
    """

    scenario: ScenarioSpec
    base_url: str
    vu_id: int
    iteration: int
    user_id: Optional[str]
    rng: random.Random

    def param(self, name: str, default: Any = None) -> Any:
        return self.scenario.params.get(name, default)


BuildFn = Callable[[IterationContext], RequestSpec]
FollowUpFn = Callable[[IterationContext, RequestOutcome, OutcomeCategory], Optional[RequestSpec]]


@dataclass(frozen=True)
class Behavior:
    name: str
    build: BuildFn
    needs_identity: bool = False
    # JSON field a 2xx answer to the built request must carry to be a success.
    success_field: Optional[str] = None
    follow_up: Optional[FollowUpFn] = None


BEHAVIORS: Dict[str, Behavior] = {}


def register_behavior(
    name: str,
    build: BuildFn,
    *,
    needs_identity: bool = False,
    success_field: Optional[str] = None,
    follow_up: Optional[FollowUpFn] = None,
) -> None:
    """
    Register a behavior under an entry-point name.

    Args:
        name: Identifier scenarios reference via `exec`.
        build: Function mapping an IterationContext to a RequestSpec.
        needs_identity: True if the behavior reads ctx.user_id; scenarios
            using it must then configure an identity strategy.
        success_field: JSON field a 2xx body must carry to count as success.
        follow_up: Function given the first request's outcome and category,
            returning a second request for the same iteration or None.
    """
    if not name or not isinstance(name, str):
        raise ValueError("Behavior name must be a non-empty string")
    BEHAVIORS[name] = Behavior(
        name=name,
        build=build,
        needs_identity=needs_identity,
        success_field=success_field,
        follow_up=follow_up,
    )


def get_behavior(name: str) -> Optional[Behavior]:
    return BEHAVIORS.get(name)


def list_behaviors() -> list[str]:
    return list(BEHAVIORS.keys())


def resolve_behavior(
    spec: ScenarioSpec,
    behaviors: Optional[Dict[str, Behavior]] = None,
) -> Behavior:
    """Behavior bound to a scenario. Raises SurgeConfigError if unusable."""
    table = BEHAVIORS if behaviors is None else behaviors
    behavior = table.get(spec.exec)
    if behavior is None:
        raise SurgeConfigError(
            f"unknown behavior {spec.exec!r} (known: {', '.join(sorted(table))})",
            field=f"{spec.name}.exec",
        )
    if behavior.needs_identity and spec.identity is None:
        raise SurgeConfigError(
            f"behavior {spec.exec!r} needs an identity strategy",
            field=f"{spec.name}.identity",
        )
    return behavior


def _get(ctx: IterationContext) -> RequestSpec:
    path = ctx.param("path", "/")
    return RequestSpec(method="GET", url=f"{ctx.base_url}{path}", headers=dict(ctx.param("headers", {})))


def _coupon_issue(ctx: IterationContext) -> RequestSpec:
    coupon_id = ctx.param("coupon_id", "test-coupon-1")
    return RequestSpec(
        method="POST",
        url=f"{ctx.base_url}/api/coupons/{coupon_id}/issue",
        body=json.dumps({"userId": ctx.user_id}),
        headers=dict(JSON_HEADERS),
    )


def _order_payment(ctx: IterationContext) -> RequestSpec:
    # Only the first few seeded users hold a coupon; half of their orders use it.
    coupon_holders = int(ctx.param("coupon_holders", 10))
    coupon_id = None
    user_number = ctx.user_id.rsplit("-", 1)[-1] if ctx.user_id else ""
    if user_number.isdigit() and int(user_number) <= coupon_holders and ctx.rng.random() < 0.5:
        coupon_id = ctx.param("coupon_id", "test-coupon-1")
    return RequestSpec(
        method="POST",
        url=f"{ctx.base_url}/api/orders",
        body=json.dumps({"userId": ctx.user_id, "couponId": coupon_id}),
        headers=dict(JSON_HEADERS),
    )


def _balance_charge(ctx: IterationContext) -> RequestSpec:
    # 1,000 .. 99,000 in steps of 1,000
    amount = ctx.rng.randint(0, 98) * 1000 + 1000
    return RequestSpec(
        method="POST",
        url=f"{ctx.base_url}/api/users/{ctx.user_id}/balance/charge",
        body=json.dumps({"amount": amount}),
        headers=dict(JSON_HEADERS),
    )


def _order_detail(
    ctx: IterationContext, outcome: RequestOutcome, category: OutcomeCategory
) -> Optional[RequestSpec]:
    if category is not OutcomeCategory.SUCCESS:
        return None
    if ctx.rng.random() >= float(ctx.param("detail_ratio", 0.1)):
        return None
    order_id = extract_field(outcome.body, "orderId")
    if order_id is None:
        return None
    return RequestSpec(method="GET", url=f"{ctx.base_url}/api/orders/{order_id}")


def _balance_check(
    ctx: IterationContext, outcome: RequestOutcome, category: OutcomeCategory
) -> Optional[RequestSpec]:
    # Checked whatever the charge outcome was.
    if ctx.rng.random() >= float(ctx.param("balance_check_ratio", 0.3)):
        return None
    return RequestSpec(method="GET", url=f"{ctx.base_url}/api/users/{ctx.user_id}/balance")


register_behavior("get", _get)
register_behavior("coupon_issue", _coupon_issue, needs_identity=True)
register_behavior(
    "order_payment",
    _order_payment,
    needs_identity=True,
    success_field="orderId",
    follow_up=_order_detail,
)
register_behavior(
    "balance_charge",
    _balance_charge,
    needs_identity=True,
    success_field="currentBalance",
    follow_up=_balance_check,
)
