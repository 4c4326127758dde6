"""Cutover data model: phases, health samples, flags, checkpoints, rollback events.

RolloutPhase lifecycle:
    idle -> ramping -> monitoring -> validating -> completed
                 \           \            \
                  +-> failed  +-> rolling_back -> rolled_back
"""
from __future__ import annotations
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import PhaseTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_percentage(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValueError(f"percentage must be an integer 0-100, got {value!r}")
    return value


class PhaseStatus(str, Enum):
    IDLE = "idle"; RAMPING = "ramping"; MONITORING = "monitoring"; VALIDATING = "validating"
    ROLLING_BACK = "rolling_back"; COMPLETED = "completed"; ROLLED_BACK = "rolled_back"; FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({PhaseStatus.COMPLETED, PhaseStatus.ROLLED_BACK, PhaseStatus.FAILED})

TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.IDLE: frozenset({PhaseStatus.RAMPING, PhaseStatus.FAILED}),
    PhaseStatus.RAMPING: frozenset({PhaseStatus.MONITORING, PhaseStatus.ROLLING_BACK, PhaseStatus.FAILED}),
    PhaseStatus.MONITORING: frozenset({PhaseStatus.VALIDATING, PhaseStatus.ROLLING_BACK, PhaseStatus.FAILED}),
    PhaseStatus.VALIDATING: frozenset({PhaseStatus.COMPLETED, PhaseStatus.ROLLING_BACK, PhaseStatus.FAILED}),
    PhaseStatus.ROLLING_BACK: frozenset({PhaseStatus.ROLLED_BACK, PhaseStatus.FAILED}),
}


@dataclass(frozen=True, slots=True)
class HealthSample:
    """One monitoring tick. Rates are fractions (0.0-1.0)."""
    timestamp: float
    error_rate: float
    latency_ms: float
    baseline_latency_ms: float
    user_success_rate: float
    data_integrity: bool

    def __post_init__(self):
        for name in ("error_rate", "user_success_rate"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be within 0.0-1.0, got {v}")

    @property
    def latency_ratio(self) -> float:
        return self.latency_ms / self.baseline_latency_ms if self.baseline_latency_ms > 0 else float("inf")

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["latency_ratio"] = round(self.latency_ratio, 4)
        return d


@dataclass
class RolloutPhase:
    phase_id: str
    position: int
    target_percentage: int
    status: PhaseStatus = PhaseStatus.IDLE
    started_at: datetime | None = None
    last_sample: HealthSample | None = None
    reason: str = ""
    dry_run: bool = False
    history: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self):
        check_percentage(self.target_percentage)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def transition(self, new: PhaseStatus, reason: str = "") -> None:
        if new not in TRANSITIONS.get(self.status, frozenset()):
            raise PhaseTransitionError(f"{self.phase_id}: {self.status.value} -> {new.value} not allowed",
                                       details={"phase_id": self.phase_id, "from": self.status.value, "to": new.value})
        if new == PhaseStatus.RAMPING: self.started_at = utcnow()
        if reason: self.reason = reason
        self.status = new
        self.history.append((utcnow().isoformat(), new.value))

    def to_dict(self) -> dict[str, Any]:
        return {"phase_id": self.phase_id, "position": self.position, "target_percentage": self.target_percentage,
                "status": self.status.value, "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_sample": self.last_sample.as_dict() if self.last_sample else None,
                "reason": self.reason, "dry_run": self.dry_run, "history": list(self.history)}


@dataclass
class FeatureFlag:
    name: str
    enabled: bool = False
    rollout_percentage: int = 0
    updated_at: datetime | None = None
    updated_by: str = ""

    def __post_init__(self):
        check_percentage(self.rollout_percentage)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "enabled": self.enabled, "rollout_percentage": self.rollout_percentage,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None, "updated_by": self.updated_by}


class CheckpointStatus(str, Enum):
    PENDING = "pending"; COMPLETED = "completed"; FAILED = "failed"


@dataclass(frozen=True)
class Checkpoint:
    checkpoint_id: str
    phase_id: str
    milestone: str
    status: CheckpointStatus
    metrics: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"checkpoint_id": self.checkpoint_id, "phase_id": self.phase_id, "milestone": self.milestone,
                "status": self.status.value, "metrics": dict(self.metrics), "timestamp": self.timestamp.isoformat()}


class RollbackScope(str, Enum):
    IMMEDIATE = "immediate"; GRACEFUL = "graceful"; COMPLETE = "complete"; SERVICE = "service"


class RollbackStatus(str, Enum):
    INITIATED = "initiated"; SUCCEEDED = "succeeded"; FAILED = "failed"


class AlertSeverity(str, Enum):
    INFO = "INFO"; HIGH = "HIGH"; CRITICAL = "CRITICAL"


@dataclass
class RollbackEvent:
    scope: RollbackScope
    reason: str
    force: bool = False
    service: str | None = None
    initiated_at: datetime = field(default_factory=utcnow)
    status: RollbackStatus = RollbackStatus.INITIATED
    event_id: str | None = None
    failed_steps: list[str] = field(default_factory=list)
    completed_at: datetime | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"event_id": self.event_id, "scope": self.scope.value, "reason": self.reason, "force": self.force,
                "service": self.service, "initiated_at": self.initiated_at.isoformat(), "status": self.status.value,
                "failed_steps": list(self.failed_steps), "duration_ms": round(self.duration_ms, 1),
                "completed_at": self.completed_at.isoformat() if self.completed_at else None}


def sample_now(error_rate: float, latency_ms: float, baseline_latency_ms: float,
               user_success_rate: float, data_integrity: bool) -> HealthSample:
    return HealthSample(time.time(), error_rate, latency_ms, baseline_latency_ms, user_success_rate, data_integrity)


__all__ = ["PhaseStatus", "TERMINAL_STATUSES", "TRANSITIONS", "HealthSample", "RolloutPhase", "FeatureFlag",
           "CheckpointStatus", "Checkpoint", "RollbackScope", "RollbackStatus", "AlertSeverity", "RollbackEvent",
           "check_percentage", "sample_now", "utcnow"]
