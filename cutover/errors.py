"""Cutover error taxonomy.

Soft:  MetricsUnavailableError, RollbackInProgressError
Hard:  ConfigurationError, FlagUpdateError, RollbackExecutionError, PhaseTransitionError
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any


class RolloutError(Exception):
    """Base error for the rollout controller."""
    soft: bool = False
    default_code = "ROLLOUT_ERROR"

    def __init__(self, message: str, error_code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, "details": self.details,
                "soft": self.soft, "timestamp": self.timestamp.isoformat()}

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"


class ConfigurationError(RolloutError):
    """Missing predecessor checkpoint, unknown phase/scope/service. No state was mutated."""
    default_code = "CONFIGURATION_ERROR"


# Gating failures are described as validation errors by operators; same type.
ValidationError = ConfigurationError


class MetricsUnavailableError(RolloutError):
    soft = True
    default_code = "METRICS_UNAVAILABLE"


class FlagUpdateError(RolloutError):
    default_code = "FLAG_UPDATE_FAILED"

    def __init__(self, message: str, flag: str | None = None, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.flag = flag
        self.attempts = attempts
        if flag: self.details.setdefault("flag", flag)
        if attempts: self.details.setdefault("attempts", attempts)


class RollbackInProgressError(RolloutError):
    """Another rollback holds the lease for this scope. Back off or treat as handled."""
    soft = True
    default_code = "ROLLBACK_IN_PROGRESS"


class RollbackExecutionError(RolloutError):
    default_code = "ROLLBACK_FAILED"

    def __init__(self, message: str, failed_steps: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.failed_steps = list(failed_steps or [])
        self.details.setdefault("failed_steps", self.failed_steps)


class PhaseTransitionError(RolloutError):
    default_code = "INVALID_TRANSITION"


__all__ = ["RolloutError", "ConfigurationError", "ValidationError", "MetricsUnavailableError",
           "FlagUpdateError", "RollbackInProgressError", "RollbackExecutionError", "PhaseTransitionError"]
