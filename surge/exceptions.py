"""
Typed exceptions for surge.

Provides structured error handling with:
- SurgeError: Base exception for all surge errors
- SurgeConfigError: Invalid plan, scenario or threshold configuration
- SurgeMetricError: Metric registry misuse (name collisions, bad aggregates)

Failures of the system under test are never raised: they are classified
and recorded as outcomes. Only configuration and internal invariant
violations surface as exceptions, and they do so before scheduling starts.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SurgeError(Exception):
    """Base exception for all surge errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or CLI output."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class SurgeConfigError(SurgeError):
    """Configuration or validation error.

    Raised when:
    - A scenario has an empty stage list, negative duration or non-positive VU count
    - A threshold expression cannot be parsed
    - A threshold references a metric that does not exist
    - The run file is missing or malformed

    Attributes:
        field: Dotted path of the offending field, when known

    Examples:
        SurgeConfigError("stages must not be empty", field="scenarios.0.stages")
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field

        self.field = field

        super().__init__(message, code=code, details=details)


class SurgeMetricError(SurgeError):
    """Metric registry misuse.

    Raised at setup when:
    - A sink name is registered twice with different sink types
    - A threshold asks for an aggregate the sink type cannot produce

    Attributes:
        metric: Name of the metric involved
    """

    def __init__(
        self,
        message: str,
        *,
        metric: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if metric:
            details["metric"] = metric

        self.metric = metric

        super().__init__(message, code=code, details=details)


__all__ = [
    "SurgeError",
    "SurgeConfigError",
    "SurgeMetricError",
]
