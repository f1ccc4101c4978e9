"""
Configuration: environment settings and run files.

Usage:
    from surge.config import get_settings, load_plan

    settings = get_settings()
    plan = load_plan("plans/coupon.json")

Run files are JSON documents shaped like ExecutionPlan. Scenarios may be a
list, or a mapping keyed by scenario name as in k6 options:

    {
        "base_url": "http://localhost:8081",
        "scenarios": {
            "load_test": {"executor": "ramping-vus", "stages": [...]}
        },
        "thresholds": {"errors": ["rate<0.05"]}
    }

Environment variables fill in run-level knobs the file leaves unset:
    SURGE_BASE_URL, SURGE_MAX_VUS, SURGE_TICK_SECONDS, SURGE_REQUEST_TIMEOUT
and control the CLI:
    SURGE_LOG_LEVEL (default INFO), SURGE_SUMMARY_PATH
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from surge.exceptions import SurgeConfigError
from surge.plan import ExecutionPlan


class Settings:
    """Surge configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Run defaults
        self.base_url: Optional[str] = os.getenv("SURGE_BASE_URL")
        self.max_vus: Optional[int] = _int_env("SURGE_MAX_VUS")
        self.tick_seconds: Optional[float] = _float_env("SURGE_TICK_SECONDS")
        self.request_timeout: Optional[float] = _float_env("SURGE_REQUEST_TIMEOUT")

        # CLI
        self.log_level: str = os.getenv("SURGE_LOG_LEVEL", "INFO").upper()
        self.summary_path: Optional[str] = os.getenv("SURGE_SUMMARY_PATH")

    def plan_defaults(self) -> Dict[str, Any]:
        """Run-level plan fields set in the environment."""
        values = {
            "base_url": self.base_url,
            "max_vus": self.max_vus,
            "tick_seconds": self.tick_seconds,
            "request_timeout": self.request_timeout,
        }
        return {key: value for key, value in values.items() if value is not None}


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise SurgeConfigError(f"{name} must be an integer, got {raw!r}", field=name) from exc


def _float_env(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise SurgeConfigError(f"{name} must be a number, got {raw!r}", field=name) from exc


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()


def config_error_from_validation(exc: ValidationError) -> SurgeConfigError:
    """Convert a pydantic ValidationError, naming the first offending field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    message = first.get("msg", str(exc))
    return SurgeConfigError(
        f"{field}: {message}" if field else message,
        field=field,
        details={"errors": [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in errors
        ]},
    )


def plan_from_dict(
    data: Mapping[str, Any],
    *,
    settings: Optional[Settings] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ExecutionPlan:
    """
    Validate a plan document.

    Precedence: overrides (CLI flags) > document > environment.

    Raises:
        SurgeConfigError: The document is not a valid plan.
    """
    if not isinstance(data, Mapping):
        raise SurgeConfigError("plan must be a JSON object")
    settings = settings or get_settings()

    merged: Dict[str, Any] = dict(settings.plan_defaults())
    merged.update(data)
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    scenarios = merged.get("scenarios")
    if isinstance(scenarios, Mapping):
        merged["scenarios"] = [
            {"name": name, **(spec if isinstance(spec, Mapping) else {})}
            for name, spec in scenarios.items()
        ]

    try:
        return ExecutionPlan.model_validate(merged)
    except ValidationError as exc:
        raise config_error_from_validation(exc) from exc


def load_plan(
    path: Union[str, Path],
    *,
    settings: Optional[Settings] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ExecutionPlan:
    """Read and validate a JSON run file."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise SurgeConfigError(f"cannot read plan {source}: {exc}", field="path") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SurgeConfigError(
            f"plan {source} is not valid JSON: {exc.msg} (line {exc.lineno})",
            field="path",
        ) from exc
    return plan_from_dict(data, settings=settings, overrides=overrides)
