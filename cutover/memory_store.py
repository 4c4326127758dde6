"""In-memory backend (tests, dry runs, CUTOVER_BACKEND=memory)."""
from __future__ import annotations
import asyncio, itertools, logging, time
from typing import Any

from .errors import FlagUpdateError, MetricsUnavailableError
from .models import (AlertSeverity, Checkpoint, CheckpointStatus, FeatureFlag, RollbackEvent,
                     check_percentage, utcnow)
from .stores import Backend

logger = logging.getLogger("cutover.memory")


class InMemoryFlagStore:
    def __init__(self, flags: dict[str, FeatureFlag] | None = None):
        self._flags: dict[str, FeatureFlag] = dict(flags or {})
        self._lock = asyncio.Lock()
        self.update_calls: list[tuple[str, bool, int, str]] = []

    async def get_flag(self, name: str) -> FeatureFlag | None:
        f = self._flags.get(name)
        return FeatureFlag(f.name, f.enabled, f.rollout_percentage, f.updated_at, f.updated_by) if f else None

    async def update_flag(self, name: str, enabled: bool, percentage: int, actor: str) -> FeatureFlag:
        try:
            check_percentage(percentage)
        except ValueError as e:
            raise FlagUpdateError(str(e), flag=name) from e
        async with self._lock:
            self.update_calls.append((name, enabled, percentage, actor))
            flag = FeatureFlag(name, bool(enabled), percentage, utcnow(), actor)
            self._flags[name] = flag
            return flag

    async def list_flags(self) -> list[FeatureFlag]:
        return [await self.get_flag(n) for n in sorted(self._flags)]


class InMemoryMetrics:
    """Static telemetry; set attributes to change what the next tick reads."""
    def __init__(self, error_rate: float = 0.01, latency_ms: float = 200.0, baseline_ms: float | None = 250.0,
                 user_success_rate: float = 0.99, integrity: bool = True):
        self.error = error_rate; self.latency = latency_ms; self.baseline = baseline_ms
        self.success = user_success_rate; self.integrity = integrity
        self.calls: list[str] = []

    async def error_rate(self, window_seconds: int) -> float:
        self.calls.append("error_rate"); return self.error

    async def latency_ms(self, window_seconds: int) -> float:
        self.calls.append("latency_ms"); return self.latency

    async def baseline_latency_ms(self) -> float:
        self.calls.append("baseline_latency_ms")
        if self.baseline is None: raise MetricsUnavailableError("no performance baseline recorded")
        return self.baseline

    async def user_success_rate(self, window_seconds: int) -> float:
        self.calls.append("user_success_rate"); return self.success

    async def data_integrity_ok(self) -> bool:
        self.calls.append("data_integrity_ok"); return self.integrity


class InMemoryCheckpointStore:
    def __init__(self):
        self._items: list[Checkpoint] = []
        self._ids = itertools.count(1)
        self.cleared = 0

    async def create_checkpoint(self, phase_id: str, milestone: str, metrics: dict[str, Any],
                                status: str = "completed") -> str:
        cid = f"cp-{next(self._ids)}"
        self._items.append(Checkpoint(cid, phase_id, milestone, CheckpointStatus(status), dict(metrics), utcnow()))
        return cid

    async def latest_completed(self, phase_id: str) -> Checkpoint | None:
        done = [c for c in self._items if c.phase_id == phase_id and c.status == CheckpointStatus.COMPLETED]
        return done[-1] if done else None

    async def list_checkpoints(self, phase_id: str | None = None) -> list[Checkpoint]:
        return [c for c in self._items if phase_id is None or c.phase_id == phase_id]

    async def clear_all(self) -> None:
        self._items.clear(); self.cleared += 1


class InMemoryAlertSink:
    def __init__(self):
        self.alerts: list[tuple[AlertSeverity, str, dict]] = []

    async def send(self, severity: AlertSeverity, message: str, context: dict[str, Any]) -> None:
        self.alerts.append((severity, message, dict(context)))
        logger.log(logging.CRITICAL if severity == AlertSeverity.CRITICAL else logging.WARNING
                   if severity == AlertSeverity.HIGH else logging.INFO, f"ALERT [{severity.value}]: {message}")


class InMemoryLeaseStore:
    def __init__(self):
        self._leases: dict[str, tuple[str, float]] = {}

    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        current = self._leases.get(key)
        if current and current[0] != holder and current[1] > now:
            return False
        self._leases[key] = (holder, now + ttl_seconds)
        return True

    async def release(self, key: str, holder: str) -> None:
        if self._leases.get(key, ("", 0))[0] == holder:
            del self._leases[key]

    def held(self, key: str) -> bool:
        current = self._leases.get(key)
        return bool(current and current[1] > time.monotonic())


class InMemoryRollbackLog:
    def __init__(self):
        self.events: dict[str, RollbackEvent] = {}
        self._ids = itertools.count(1)

    async def record(self, event: RollbackEvent) -> str:
        event.event_id = event.event_id or f"rb-{next(self._ids)}"
        self.events[event.event_id] = event
        return event.event_id

    async def update(self, event: RollbackEvent) -> None:
        self.events[event.event_id] = event

    async def list_events(self, limit: int = 20) -> list[RollbackEvent]:
        return sorted(self.events.values(), key=lambda e: e.initiated_at, reverse=True)[:limit]


class InMemoryPlatform:
    def __init__(self, sessions: int = 0):
        self.sessions = sessions
        self.cache_entries = 0
        self.state_backups: list[str] = []
        self.calls: list[str] = []
        self.dual_write = False

    async def clear_package_cache(self) -> int:
        self.calls.append("clear_package_cache")
        n, self.cache_entries = self.cache_entries, 0
        return n

    async def active_sessions(self) -> int:
        return self.sessions

    async def preserve_service_state(self, service: str) -> str:
        self.calls.append(f"preserve_service_state:{service}")
        self.state_backups.append(service)
        return f"backup-{len(self.state_backups)}"

    async def restore_service_state(self, service: str | None = None) -> bool:
        self.calls.append(f"restore_service_state:{service or '*'}")
        return bool(self.state_backups)

    async def stop_services(self, names: list[str]) -> None:
        self.calls.append("stop_services")

    async def restore_all_data(self) -> None:
        self.calls.append("restore_all_data")

    async def restore_legacy_config(self) -> None:
        self.calls.append("restore_legacy_config")

    async def enable_dual_write_cache(self) -> None:
        self.calls.append("enable_dual_write_cache")
        self.dual_write = True


def build_memory_backend(**metrics) -> Backend:
    return Backend(flags=InMemoryFlagStore(), metrics=InMemoryMetrics(**metrics), checkpoints=InMemoryCheckpointStore(),
                   alerts=InMemoryAlertSink(), leases=InMemoryLeaseStore(), rollback_log=InMemoryRollbackLog(),
                   platform=InMemoryPlatform(), name="memory")


__all__ = ["InMemoryFlagStore", "InMemoryMetrics", "InMemoryCheckpointStore", "InMemoryAlertSink",
           "InMemoryLeaseStore", "InMemoryRollbackLog", "InMemoryPlatform", "build_memory_backend"]
