"""
Threshold rules: post-run pass/fail assertions over metric aggregates.

A plan lists expressions per metric, k6 style:

    {
        "http_req_duration": ["p(95)<1000", "p(99)<2000"],
        "errors": ["rate<0.05"],
        "http_req_duration{scenario:peak_test}": ["avg<=500"],
    }

Aggregates by sink type:
    counter  count, rate (per second)
    rate     rate, passes, fails, total
    trend    count, min, max, avg, med, p(N)   ("pN" is accepted for p(N))

Comparators: <, <=, >, >=, ==, !=

Rules are parsed and checked against the registry before the run starts,
then evaluated once against the final snapshot. A sink with no samples
reports 0 for every aggregate, so "rate<0.01" passes on an idle metric and
"count>0" fails on it. The run passes only if every rule passes.
"""

from __future__ import annotations

import operator
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

from surge.exceptions import SurgeConfigError, SurgeMetricError
from surge.metrics.registry import MetricsRegistry
from surge.metrics.sinks import percentile_key

COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION = re.compile(
    r"""^\s*
    (?P<aggregate>[a-z]+(?:\(\s*[0-9.]+\s*\))?|p[0-9.]+)
    \s*(?P<comparator><=|>=|==|!=|<|>)\s*
    (?P<bound>[-+]?[0-9]*\.?[0-9]+(?:e[-+]?[0-9]+)?)
    \s*$""",
    re.IGNORECASE | re.VERBOSE,
)
_PERCENTILE = re.compile(r"^p\(?\s*([0-9]+(?:\.[0-9]+)?)\s*\)?$")


def normalize_aggregate(aggregate: str) -> str:
    """Canonical aggregate name: "P95" -> "p(95)", "p( 99.9 )" -> "p(99.9)", "AVG" -> "avg"."""
    text = aggregate.strip().lower()
    match = _PERCENTILE.match(text)
    if match:
        q = float(match.group(1))
        if not 0 <= q <= 100:
            raise ValueError(f"percentile out of range: {aggregate!r}")
        return percentile_key(q)
    return text


class ThresholdRule(BaseModel):
    """
    One assertion: `aggregate(metric) comparator bound`.

    `metric` is a registry key, optionally tagged
    ("http_req_duration{scenario:load_test}").
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    metric: str = Field(..., min_length=1)
    aggregate: str
    comparator: str
    bound: float

    @field_validator("aggregate")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_aggregate(value)

    @field_validator("comparator")
    @classmethod
    def _check_comparator(cls, value: str) -> str:
        if value not in COMPARATORS:
            raise ValueError(f"unknown comparator {value!r}")
        return value

    @classmethod
    def parse(cls, metric: str, expression: str) -> "ThresholdRule":
        """Build a rule from a k6-style expression such as "p(95)<1000"."""
        match = _EXPRESSION.match(expression or "")
        if not match:
            raise SurgeConfigError(
                f"invalid threshold expression {expression!r} for {metric!r}",
                field=f"thresholds.{metric}",
                details={"expression": expression},
            )
        try:
            return cls(
                metric=metric,
                aggregate=match.group("aggregate"),
                comparator=match.group("comparator"),
                bound=float(match.group("bound")),
            )
        except ValueError as exc:
            raise SurgeConfigError(
                f"invalid threshold expression {expression!r} for {metric!r}: {exc}",
                field=f"thresholds.{metric}",
                details={"expression": expression},
            ) from exc

    @property
    def expression(self) -> str:
        return f"{self.aggregate}{self.comparator}{self.bound:g}"

    @property
    def percentile(self) -> Optional[float]:
        match = _PERCENTILE.match(self.aggregate)
        return float(match.group(1)) if match else None

    def check(self, observed: float) -> bool:
        return COMPARATORS[self.comparator](observed, self.bound)


class ThresholdVerdict(BaseModel):
    """Outcome of one rule against the final snapshot."""

    model_config = ConfigDict(frozen=True)

    metric: str
    expression: str
    observed: float
    passed: bool


def parse_thresholds(thresholds: Mapping[str, Iterable[str]]) -> List[ThresholdRule]:
    """Parse a plan's threshold mapping, in metric order."""
    rules: List[ThresholdRule] = []
    for metric in sorted(thresholds):
        expressions = thresholds[metric]
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            rules.append(ThresholdRule.parse(metric, expression))
    return rules


def validate_rules(rules: Iterable[ThresholdRule], registry: MetricsRegistry) -> None:
    """
    Fail fast on rules that could never be evaluated.

    Raises:
        SurgeConfigError: The metric is not registered.
        SurgeMetricError: The sink type has no such aggregate.
    """
    for rule in rules:
        if rule.metric not in registry:
            raise SurgeConfigError(
                f"threshold on unknown metric {rule.metric!r}",
                field=f"thresholds.{rule.metric}",
            )
        sink = registry.get(rule.metric)
        if not sink.supports(rule.aggregate):
            raise SurgeMetricError(
                f"{sink.kind} metric {rule.metric!r} has no aggregate {rule.aggregate!r}",
                metric=rule.metric,
                details={"aggregate": rule.aggregate, "type": sink.kind},
            )


def required_percentiles(rules: Iterable[ThresholdRule]) -> Set[float]:
    """Percentiles the final snapshot must contain for these rules."""
    return {rule.percentile for rule in rules if rule.percentile is not None}


def evaluate_rule(rule: ThresholdRule, snapshot: Mapping[str, Mapping[str, Any]]) -> ThresholdVerdict:
    values = snapshot.get(rule.metric, {})
    observed = float(values.get(rule.aggregate, 0.0) or 0.0)
    return ThresholdVerdict(
        metric=rule.metric,
        expression=rule.expression,
        observed=observed,
        passed=rule.check(observed),
    )


def evaluate(
    rules: Iterable[ThresholdRule],
    snapshot: Mapping[str, Mapping[str, Any]],
) -> List[ThresholdVerdict]:
    return [evaluate_rule(rule, snapshot) for rule in rules]


def all_passed(verdicts: Iterable[ThresholdVerdict]) -> bool:
    """Logical AND of every verdict; True when there are none."""
    return all(verdict.passed for verdict in verdicts)
