"""
OutcomeRecorder: the standard metric set written by every virtual user.

Metrics (all registered at construction):
- http_reqs (counter), http_reqs{scenario:<name>}
- http_req_duration (trend, ms), http_req_duration{scenario:<name>}
- http_req_failed (rate): status 0 or >= 400
- errors (rate): any outcome other than success
- status_200, status_202, status_400, status_409, status_500, status_other (counters)
- outcome_<category> (counter), <category>_rate (rate), latency_<category> (trend)
- iterations (counter), iterations{scenario:<name>}
- iterations_interrupted (counter): iterations cut short by shutdown
- iteration_errors (counter): iterations whose behavior raised
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

from surge.metrics.registry import MetricsRegistry
from surge.metrics.sinks import Counter, Trend
from surge.models import OutcomeCategory, RequestOutcome

TRACKED_STATUSES = (200, 202, 400, 409, 500)

HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
ERRORS = "errors"
ITERATIONS = "iterations"
ITERATIONS_INTERRUPTED = "iterations_interrupted"
ITERATION_ERRORS = "iteration_errors"


def status_metric(status: int) -> str:
    if status in TRACKED_STATUSES:
        return f"status_{status}"
    return "status_other"


def outcome_metric(category: OutcomeCategory) -> str:
    return f"outcome_{category.value}"


def rate_metric(category: OutcomeCategory) -> str:
    return f"{category.value}_rate"


def latency_metric(category: OutcomeCategory) -> str:
    return f"latency_{category.value}"


class OutcomeRecorder:
    """
    Records classified outcomes into a MetricsRegistry.

    Sinks are resolved once here; record() only touches sink locks.
    """

    def __init__(self, registry: MetricsRegistry, scenarios: Iterable[str] = ()) -> None:
        self.registry = registry

        self._reqs = registry.counter(HTTP_REQS)
        self._duration = registry.trend(HTTP_REQ_DURATION)
        self._failed = registry.rate(HTTP_REQ_FAILED)
        self._errors = registry.rate(ERRORS)
        self._iterations = registry.counter(ITERATIONS)
        self._interrupted = registry.counter(ITERATIONS_INTERRUPTED)
        self._iteration_errors = registry.counter(ITERATION_ERRORS)

        self._status = {
            status: registry.counter(status_metric(status)) for status in TRACKED_STATUSES
        }
        self._status_other = registry.counter("status_other")

        self._outcomes = {c: registry.counter(outcome_metric(c)) for c in OutcomeCategory}
        self._rates = {c: registry.rate(rate_metric(c)) for c in OutcomeCategory}
        self._latency = {c: registry.trend(latency_metric(c)) for c in OutcomeCategory}

        self._by_scenario: Dict[str, Tuple[Counter, Trend, Counter]] = {}
        for name in scenarios:
            self._scenario_sinks(name)

    def _scenario_sinks(self, scenario: str) -> Tuple[Counter, Trend, Counter]:
        sinks = self._by_scenario.get(scenario)
        if sinks is None:
            tags = {"scenario": scenario}
            sinks = (
                self.registry.counter(HTTP_REQS, tags),
                self.registry.trend(HTTP_REQ_DURATION, tags),
                self.registry.counter(ITERATIONS, tags),
            )
            self._by_scenario[scenario] = sinks
        return sinks

    def record(
        self,
        scenario: str,
        outcome: RequestOutcome,
        category: OutcomeCategory,
    ) -> None:
        """Record one classified request."""
        reqs, duration, _ = self._scenario_sinks(scenario)
        latency = outcome.latency_ms

        self._reqs.add()
        reqs.add()
        self._duration.add(latency)
        duration.add(latency)

        self._status.get(outcome.status, self._status_other).add()
        self._failed.add(outcome.status == 0 or outcome.status >= 400)
        self._errors.add(category is not OutcomeCategory.SUCCESS)

        self._outcomes[category].add()
        self._latency[category].add(latency)
        for candidate, rate in self._rates.items():
            rate.add(candidate is category)

    def record_iteration(self, scenario: str) -> None:
        self._iterations.add()
        self._scenario_sinks(scenario)[2].add()

    def record_interrupted(self, scenario: str) -> None:
        self._interrupted.add()
        self.registry.counter(ITERATIONS_INTERRUPTED, {"scenario": scenario}).add()

    def record_iteration_error(self, scenario: str) -> None:
        self._iteration_errors.add()
        self.registry.counter(ITERATION_ERRORS, {"scenario": scenario}).add()
