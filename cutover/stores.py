"""Collaborator contracts for the rollout controller.

PhaseController and RollbackOrchestrator depend only on these protocols. Concrete
backends live in memory_store (tests, dry runs) and sqlite_store (operations).
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Protocol

from .models import AlertSeverity, Checkpoint, FeatureFlag, RollbackEvent


class FlagStore(Protocol):
    async def get_flag(self, name: str) -> FeatureFlag | None: ...
    async def update_flag(self, name: str, enabled: bool, percentage: int, actor: str) -> FeatureFlag:
        """Atomic per flag. Raises FlagUpdateError."""
        ...
    async def list_flags(self) -> list[FeatureFlag]: ...


class MetricsSource(Protocol):
    """Read-only telemetry. Any method may raise when the backend is unavailable."""
    async def error_rate(self, window_seconds: int) -> float: ...
    async def latency_ms(self, window_seconds: int) -> float: ...
    async def baseline_latency_ms(self) -> float: ...
    async def user_success_rate(self, window_seconds: int) -> float: ...
    async def data_integrity_ok(self) -> bool: ...


class CheckpointStore(Protocol):
    async def create_checkpoint(self, phase_id: str, milestone: str, metrics: dict[str, Any],
                                status: str = "completed") -> str: ...
    async def latest_completed(self, phase_id: str) -> Checkpoint | None: ...
    async def list_checkpoints(self, phase_id: str | None = None) -> list[Checkpoint]: ...
    async def clear_all(self) -> None: ...


class AlertSink(Protocol):
    async def send(self, severity: AlertSeverity, message: str, context: dict[str, Any]) -> None: ...


class LeaseStore(Protocol):
    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool: ...
    async def release(self, key: str, holder: str) -> None: ...


class RollbackLog(Protocol):
    async def record(self, event: RollbackEvent) -> str: ...
    async def update(self, event: RollbackEvent) -> None: ...
    async def list_events(self, limit: int = 20) -> list[RollbackEvent]: ...


class Platform(Protocol):
    """Side effects outside the flag document: caches, sessions, backups, service lifecycle."""
    async def clear_package_cache(self) -> int: ...
    async def active_sessions(self) -> int: ...
    async def preserve_service_state(self, service: str) -> str: ...
    async def restore_service_state(self, service: str | None = None) -> bool: ...
    async def stop_services(self, names: list[str]) -> None: ...
    async def restore_all_data(self) -> None: ...
    async def restore_legacy_config(self) -> None: ...
    async def enable_dual_write_cache(self) -> None: ...


@dataclass
class Backend:
    """Bound set of collaborators, selected by environment."""
    flags: FlagStore
    metrics: MetricsSource
    checkpoints: CheckpointStore
    alerts: AlertSink
    leases: LeaseStore
    rollback_log: RollbackLog
    platform: Platform
    name: str = "custom"


__all__ = ["FlagStore", "MetricsSource", "CheckpointStore", "AlertSink", "LeaseStore", "RollbackLog",
           "Platform", "Backend"]
