from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# Status reported by the transport when no HTTP response was received.
NETWORK_FAILURE_STATUS = 0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts plain numbers (seconds) or k6-style strings made of one or more
    number+unit parts: "500ms", "30s", "1m", "1m30s", "2h".
    """
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '30s'")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError("duration must be a number or a string like '30s'")
    text = value.strip().lower()
    if not text:
        raise ValueError("duration must not be empty")
    if text.startswith("-"):
        # Let the numeric range checks report negative durations.
        return -parse_duration(text[1:])
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


class ExecutorKind(str, Enum):
    """How a scenario turns its profile into running virtual users."""

    CONSTANT_VUS = "constant-vus"
    RAMPING_VUS = "ramping-vus"
    PER_VU_ITERATIONS = "per-vu-iterations"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ExecutorKind"]:
        # Accept "ConstantVUs", "constant_vus", "RAMPING-VUS", ...
        if not isinstance(value, str):
            return None
        wanted = re.sub(r"[-_\s]", "", value).lower()
        for member in cls:
            if member.value.replace("-", "") == wanted:
                return member
        return None


class OutcomeCategory(str, Enum):
    """
    Closed taxonomy of request outcomes.

    Business categories are correct refusals by the system under test and
    are not failures from the engine's point of view. Declaration order is
    the report order.
    """

    SUCCESS = "success"
    BIZ_DUPLICATE = "biz_duplicate"
    BIZ_SOLD_OUT = "biz_sold_out"
    BIZ_INSUFFICIENT_BALANCE = "biz_insufficient_balance"
    BIZ_INSUFFICIENT_STOCK = "biz_insufficient_stock"
    BIZ_UNKNOWN = "biz_unknown"
    SYSTEM_ERROR = "system_error"

    @property
    def is_business(self) -> bool:
        return self.value.startswith("biz_")


class Domain(str, Enum):
    """Keyword vocabulary used to interpret 400 response bodies."""

    GENERIC = "generic"
    COUPON = "coupon"
    ORDER = "order"


class IdentityStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    RANDOM = "random"


class Stage(BaseModel):
    """One segment of a ramping profile: reach `target` VUs over `duration` seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float = Field(..., ge=0)
    target: int = Field(..., ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)


class Pacing(BaseModel):
    """Think time after each iteration, drawn uniformly from [min, max] seconds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    min_seconds: float = Field(default=0.0, ge=0)
    max_seconds: float = Field(default=0.0, ge=0)

    @field_validator("min_seconds", "max_seconds", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("max_seconds")
    @classmethod
    def _check_bounds(cls, value: float, info: ValidationInfo) -> float:
        low = info.data.get("min_seconds")
        if low is not None and value < low:
            raise ValueError("max_seconds must be >= min_seconds")
        return value


class IdentityConfig(BaseModel):
    """
    Identity generation for a scenario.

    Attributes:
        strategy: "sequential" (collision-free, per-vu-iterations only) or
            "random" (uniform draw from [1, pool_size]).
        pool_size: Size of the random pool. Required for "random"; its ratio
            to the target's finite resource count is a deliberate test knob.
        prefix: String prepended to the numeric identity.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    strategy: IdentityStrategy = IdentityStrategy.RANDOM
    pool_size: Optional[int] = Field(default=None, ge=1, validate_default=True)
    prefix: str = "test-user-"

    @field_validator("pool_size")
    @classmethod
    def _require_pool(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        if info.data.get("strategy") == IdentityStrategy.RANDOM and value is None:
            raise ValueError("pool_size is required for the random strategy")
        return value


class ScenarioSpec(BaseModel):
    """
    Immutable description of one scenario.

    Which profile fields apply depends on `executor`:
    - constant-vus: `vus` + `duration`
    - ramping-vus: `stages` (+ optional `start_vus`)
    - per-vu-iterations: `vus` + `iterations` (bounded by `max_duration`)

    All durations are seconds; strings like "30s" are accepted on input.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1)
    executor: ExecutorKind
    exec: str = "get"

    vus: Optional[int] = Field(default=None, validate_default=True)
    duration: Optional[float] = Field(default=None, validate_default=True)
    stages: Optional[List[Stage]] = Field(default=None, validate_default=True)
    start_vus: int = Field(default=0, ge=0)
    iterations: Optional[int] = Field(default=None, validate_default=True)
    max_duration: float = Field(default=600.0, gt=0)

    start_offset: float = Field(default=0.0, ge=0)
    graceful_stop: float = Field(default=30.0, ge=0)
    graceful_ramp_down: float = Field(default=30.0, ge=0)

    pacing: Pacing = Field(default_factory=Pacing)
    identity: Optional[IdentityConfig] = Field(default=None, validate_default=True)
    domain: Domain = Domain.GENERIC
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "duration",
        "max_duration",
        "start_offset",
        "graceful_stop",
        "graceful_ramp_down",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        if value is None:
            return value
        return parse_duration(value)

    @field_validator("vus")
    @classmethod
    def _check_vus(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        executor = info.data.get("executor")
        if executor in (ExecutorKind.CONSTANT_VUS, ExecutorKind.PER_VU_ITERATIONS):
            if value is None or value < 1:
                raise ValueError(f"vus must be a positive integer for {executor.value}")
        elif value is not None and value < 0:
            raise ValueError("vus must not be negative")
        return value

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: Optional[float], info: ValidationInfo) -> Optional[float]:
        if value is not None and value < 0:
            raise ValueError("duration must not be negative")
        if info.data.get("executor") == ExecutorKind.CONSTANT_VUS:
            if value is None or value <= 0:
                raise ValueError("duration must be positive for constant-vus")
        return value

    @field_validator("stages")
    @classmethod
    def _check_stages(cls, value: Optional[List[Stage]], info: ValidationInfo) -> Optional[List[Stage]]:
        if info.data.get("executor") == ExecutorKind.RAMPING_VUS and not value:
            raise ValueError("stages must not be empty for ramping-vus")
        return value

    @field_validator("iterations")
    @classmethod
    def _check_iterations(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        if info.data.get("executor") == ExecutorKind.PER_VU_ITERATIONS:
            if value is None or value < 1:
                raise ValueError("iterations must be a positive integer for per-vu-iterations")
        elif value is not None and value < 1:
            raise ValueError("iterations must be a positive integer")
        return value

    @field_validator("identity")
    @classmethod
    def _check_identity(
        cls, value: Optional[IdentityConfig], info: ValidationInfo
    ) -> Optional[IdentityConfig]:
        if (
            value is not None
            and value.strategy == IdentityStrategy.SEQUENTIAL
            and info.data.get("executor") != ExecutorKind.PER_VU_ITERATIONS
        ):
            raise ValueError("sequential identities require the per-vu-iterations executor")
        return value

    @property
    def window_seconds(self) -> float:
        """Length of the scenario's active window, excluding graceful stop."""
        if self.executor == ExecutorKind.CONSTANT_VUS:
            return float(self.duration or 0.0)
        if self.executor == ExecutorKind.RAMPING_VUS:
            return sum(stage.duration for stage in self.stages or [])
        return self.max_duration

    @property
    def peak_vus(self) -> int:
        """Highest concurrency the profile can ask for."""
        if self.executor == ExecutorKind.RAMPING_VUS:
            return max([self.start_vus] + [s.target for s in self.stages or []])
        return int(self.vus or 0)


class RequestOutcome(BaseModel):
    """
    Result of one request as seen by the engine.

    Transports report connection failures and timeouts with status 0 rather
    than raising, so classification stays total.

    Attributes:
        status: HTTP status code, or 0 when no response was received.
        body: Response body (possibly truncated).
        latency_ms: Wall-clock time of the request in milliseconds.
        error: Transport error description when status is 0.
    """

    model_config = ConfigDict(frozen=True)

    status: int = Field(..., ge=0)
    body: str = ""
    latency_ms: float = Field(default=0.0, ge=0)
    error: Optional[str] = None

    @property
    def failed_transport(self) -> bool:
        return self.status == NETWORK_FAILURE_STATUS


@dataclass(frozen=True)
class RequestSpec:
    """One HTTP request a behavior wants a virtual user to send."""

    method: str
    url: str
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
