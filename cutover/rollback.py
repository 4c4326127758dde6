"""Cutover rollback orchestrator.

Strategies (budget):
1. immediate (30s):  disable flags -> reroute to legacy -> clear cache (best effort) -> validate
2. graceful (120s):  drain 75/50/25/10/0 -> wait for sessions -> restore service state -> reroute -> validate
3. complete (300s):  stop services -> restore data -> reset flags -> clear checkpoints -> restore legacy config -> validate
4. service:          disable one service's flags (+ restore its preserved state / clear its cache) -> validate

Every run holds a single-flight lease keyed by scope, writes absolute flag values only,
records a RollbackEvent and alerts at initiation and completion.
"""
from __future__ import annotations
import asyncio, json, logging, time, uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .adapters import ResilientMetrics, RetryConfig, retry_call
from .errors import ConfigurationError, RollbackExecutionError, RollbackInProgressError, RolloutError
from .models import AlertSeverity, RollbackEvent, RollbackScope, RollbackStatus, utcnow

if TYPE_CHECKING:
    from .stores import Backend

logger = logging.getLogger("cutover.rollback")

DRAIN_SEQUENCE = (75, 50, 25, 10, 0)
LEGACY_ROUTING_FLAG = "force-legacy-routing"

SERVICE_FLAGS: dict[str, str] = {
    "recommendations": "recommendations-package-enabled",
    "circuit-breaker": "circuit-breaker-package-enabled",
    "cache": "cache-package-enabled",
    "cv-analyzer": "cv-analyzer-package-enabled",
    "improvement-orchestrator": "improvement-orchestrator-package-enabled",
    "recommendation-generator": "recommendation-generator-package-enabled",
    "recommendation-orchestrator": "recommendation-orchestrator-package-enabled",
    "action-orchestrator": "action-orchestrator-package-enabled",
}
MANAGED_FLAGS: tuple[str, ...] = tuple(SERVICE_FLAGS.values())

INITIATION_SEVERITY = {RollbackScope.IMMEDIATE: AlertSeverity.CRITICAL, RollbackScope.COMPLETE: AlertSeverity.CRITICAL,
                       RollbackScope.GRACEFUL: AlertSeverity.HIGH, RollbackScope.SERVICE: AlertSeverity.HIGH}

@dataclass(frozen=True)
class ServiceRollback:
    flags: tuple[str, ...]
    restore_state: bool = False
    clear_cache: bool = False

SERVICE_ROLLBACKS: dict[str, ServiceRollback] = {
    **{name: ServiceRollback((flag,)) for name, flag in SERVICE_FLAGS.items()},
    "recommendations": ServiceRollback(("recommendations-package-enabled", "recommendation-generator-package-enabled",
                                        "recommendation-orchestrator-package-enabled")),
    "circuit-breaker": ServiceRollback(("circuit-breaker-package-enabled",), restore_state=True),
    "cache": ServiceRollback(("cache-package-enabled",), clear_cache=True),
}

STEP_PLANS = {
    RollbackScope.IMMEDIATE: ("disable_package_services", "reroute_to_legacy", "clear_package_cache", "validate"),
    RollbackScope.GRACEFUL: ("drain_traffic", "wait_for_sessions", "restore_service_state", "reroute_to_legacy", "validate"),
    RollbackScope.COMPLETE: ("stop_package_services", "restore_all_data", "reset_flags", "clear_checkpoints",
                             "restore_legacy_config", "reroute_to_legacy", "validate"),
}

@dataclass(frozen=True)
class RollbackTimings:
    immediate_budget: float = 30.0; graceful_budget: float = 120.0; complete_budget: float = 300.0
    drain_interval: float = 10.0; session_wait: float = 60.0; session_poll: float = 5.0
    lease_timeout: float = 5.0; lease_poll: float = 0.25
    graceful_max_error_rate: float = 0.02; graceful_max_latency_ms: float = 1000.0
    stable_max_error_rate: float = 0.02; stable_max_latency_ms: float = 800.0

    def budget(self, scope: RollbackScope) -> float | None:
        return {RollbackScope.IMMEDIATE: self.immediate_budget, RollbackScope.GRACEFUL: self.graceful_budget,
                RollbackScope.COMPLETE: self.complete_budget}.get(scope)

@dataclass
class RollbackResult:
    success: bool; scope: RollbackScope; reason: str
    event: RollbackEvent | None = None; error: RolloutError | None = None
    steps: list[str] = field(default_factory=list); failed_steps: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "scope": self.scope.value, "reason": self.reason, "dry_run": self.dry_run,
                "steps": list(self.steps), "failed_steps": list(self.failed_steps),
                "event": self.event.to_dict() if self.event else None,
                "error": self.error.to_dict() if self.error else None}

class _Run:
    """Step bookkeeping for one invocation. Non-forced runs raise at the first failing step."""
    def __init__(self, scope: RollbackScope, force: bool):
        self.scope = scope; self.force = force
        self.steps: list[str] = []; self.failed: list[str] = []

    async def step(self, name: str, action: Callable[[], Awaitable[Any]], critical: bool = True) -> bool:
        logger.info(f"[{self.scope.value}] step {len(self.steps) + len(self.failed) + 1}: {name}")
        try:
            await action()
        except Exception as e:
            if not critical:
                logger.warning(f"[{self.scope.value}] {name} had issues but continuing: {e}")
                self.steps.append(name)
                return True
            self.failed.append(name)
            logger.error(f"[{self.scope.value}] {name} failed: {e}")
            if not self.force:
                raise RollbackExecutionError(f"{self.scope.value} rollback step {name} failed: {e}",
                                             failed_steps=self.failed) from e
            return False
        self.steps.append(name)
        return True

class RollbackOrchestrator:
    """Executes rollback strategies against the flag store and platform collaborators."""

    def __init__(self, flags, checkpoints, alerts, leases, rollback_log, platform, metrics,
                 managed_flags: tuple[str, ...] = MANAGED_FLAGS, timings: RollbackTimings | None = None,
                 retry: RetryConfig | None = None, actor: str = "emergency-rollback"):
        self.flags = flags; self.checkpoints = checkpoints; self.alerts = alerts
        self.leases = leases; self.log = rollback_log; self.platform = platform
        self.metrics = metrics if isinstance(metrics, ResilientMetrics) else ResilientMetrics(metrics)
        self.managed_flags = tuple(managed_flags)
        self.timings = timings or RollbackTimings()
        self.retry = retry or RetryConfig()
        self.actor = actor

    @classmethod
    def from_backend(cls, backend: "Backend", **kwargs) -> "RollbackOrchestrator":
        return cls(backend.flags, backend.checkpoints, backend.alerts, backend.leases, backend.rollback_log,
                   backend.platform, backend.metrics, **kwargs)

    # --- Dispatch ---
    async def execute(self, scope: RollbackScope | str, reason: str, force: bool = False,
                      service: str | None = None, dry_run: bool = False) -> RollbackResult:
        try:
            scope = RollbackScope(scope)
        except ValueError as e:
            raise ConfigurationError(f"unknown rollback scope: {scope} (available: immediate, graceful, complete, service)") from e
        if scope == RollbackScope.SERVICE:
            self._service_plan(service)
        if dry_run:
            return self.plan(scope, reason, service)
        if scope == RollbackScope.IMMEDIATE: return await self.immediate(reason, force)
        if scope == RollbackScope.GRACEFUL: return await self.graceful(reason, force)
        if scope == RollbackScope.COMPLETE: return await self.complete(reason, force)
        return await self.service(service, reason, force)

    def plan(self, scope: RollbackScope, reason: str, service: str | None = None) -> RollbackResult:
        if scope == RollbackScope.SERVICE:
            sr = self._service_plan(service)
            steps = [f"disable_{service}_flags"] + (["restore_service_state"] if sr.restore_state else []) \
                + (["clear_package_cache"] if sr.clear_cache else []) + ["validate"]
        else:
            steps = list(STEP_PLANS[scope])
        logger.info(f"[DRY RUN] Would execute {scope.value} rollback ({reason}): {' -> '.join(steps)}")
        return RollbackResult(True, scope, reason, steps=steps, dry_run=True)

    # --- Strategies ---
    async def immediate(self, reason: str, force: bool = False) -> RollbackResult:
        async def steps(run: _Run):
            await run.step("disable_package_services", lambda: self._set_flags(run, self.managed_flags, False, 0))
            await run.step("reroute_to_legacy", self._reroute_to_legacy)
            await run.step("clear_package_cache", self.platform.clear_package_cache, critical=False)
            await run.step("validate", self._validate_immediate)
        return await self._execute(RollbackScope.IMMEDIATE, reason, force, steps)

    async def graceful(self, reason: str, force: bool = False) -> RollbackResult:
        async def steps(run: _Run):
            await run.step("drain_traffic", lambda: self._drain(run))
            await run.step("wait_for_sessions", self._wait_for_sessions)
            await run.step("restore_service_state", self._restore_latest_state, critical=False)
            await run.step("reroute_to_legacy", self._reroute_to_legacy)
            await run.step("validate", self._validate_graceful)
        return await self._execute(RollbackScope.GRACEFUL, reason, force, steps)

    async def complete(self, reason: str, force: bool = False) -> RollbackResult:
        async def steps(run: _Run):
            await run.step("stop_package_services", lambda: self._stop_services(run))
            await run.step("restore_all_data", self.platform.restore_all_data)
            await run.step("reset_flags", lambda: self._reset_flags(run))
            await run.step("clear_checkpoints", self.checkpoints.clear_all, critical=False)
            await run.step("restore_legacy_config", self.platform.restore_legacy_config)
            await run.step("reroute_to_legacy", self._reroute_to_legacy)
            await run.step("validate", self._validate_complete)
        return await self._execute(RollbackScope.COMPLETE, reason, force, steps)

    async def service(self, name: str, reason: str, force: bool = False) -> RollbackResult:
        sr = self._service_plan(name)
        async def steps(run: _Run):
            await run.step(f"disable_{name}_flags", lambda: self._set_flags(run, sr.flags, False, 0))
            if sr.restore_state:
                await run.step("restore_service_state", lambda: self._restore_state(name))
            if sr.clear_cache:
                await run.step("clear_package_cache", self.platform.clear_package_cache, critical=False)
            await run.step("validate", lambda: self._validate_disabled(sr.flags))
        return await self._execute(RollbackScope.SERVICE, reason, force, steps, service=name)

    # --- Execution envelope ---
    def _service_plan(self, name: str | None) -> ServiceRollback:
        if name not in SERVICE_ROLLBACKS:
            raise ConfigurationError(f"unknown service for rollback: {name} (available: {', '.join(sorted(SERVICE_ROLLBACKS))})")
        return SERVICE_ROLLBACKS[name]

    async def _acquire(self, key: str, holder: str, ttl: float) -> bool:
        deadline = time.monotonic() + self.timings.lease_timeout
        while True:
            if await self.leases.acquire(key, holder, ttl):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.timings.lease_poll)

    async def alert(self, severity: AlertSeverity, message: str, context: dict) -> None:
        try:
            await self.alerts.send(severity, message, context)
        except Exception as e:
            logger.error(f"Failed to send {severity.value} alert: {e}")

    async def _persist(self, event: RollbackEvent, first: bool = False) -> None:
        try:
            if first: await self.log.record(event)
            else: await self.log.update(event)
        except Exception as e:
            logger.error(f"Failed to record rollback event: {e}")

    async def _execute(self, scope: RollbackScope, reason: str, force: bool,
                       steps: Callable[[_Run], Awaitable[None]], service: str | None = None) -> RollbackResult:
        key = f"service:{service}" if scope == RollbackScope.SERVICE else scope.value
        holder = uuid.uuid4().hex[:12]
        budget = self.timings.budget(scope)
        label = f"{scope.value} rollback" + (f" of {service}" if service else "")
        if not await self._acquire(key, holder, (budget or 300.0) + 60.0):
            logger.warning(f"Rollback lease {key} held by another run; not executing")
            event = RollbackEvent(scope, reason, force, service, status=RollbackStatus.FAILED,
                                  failed_steps=["lease_unavailable"], completed_at=utcnow())
            await self._persist(event, first=True)
            await self.alert(INITIATION_SEVERITY[scope], f"{label.capitalize()} not executed: already in progress",
                             {"scope": scope.value, "reason": reason, "force": force, "service": service,
                              "event_id": event.event_id, "failed_steps": list(event.failed_steps)})
            raise RollbackInProgressError(f"{key} rollback already in progress",
                                          details={"scope": key, "event_id": event.event_id})
        try:
            event = RollbackEvent(scope, reason, force, service)
            await self._persist(event, first=True)
            ctx = {"scope": scope.value, "reason": reason, "force": force, "service": service, "event_id": event.event_id}
            logger.critical(f"EXECUTING {label.upper()}: {json.dumps(ctx)}")
            await self.alert(INITIATION_SEVERITY[scope], f"{label.capitalize()} initiated: {reason}", ctx)

            run, error, start = _Run(scope, force), None, time.monotonic()
            try:
                if budget: await asyncio.wait_for(steps(run), timeout=budget)
                else: await steps(run)
            except RollbackExecutionError as e:
                error = e
            except asyncio.TimeoutError:
                run.failed.append("budget_exceeded")
                error = RollbackExecutionError(f"{label} exceeded its {budget:.0f}s budget", failed_steps=run.failed)
            except asyncio.CancelledError:
                run.failed.append("cancelled")
                self._finish(event, run, start)
                await self._persist(event)
                raise
            if error is None and run.failed:
                error = RollbackExecutionError(f"{label} completed with {len(run.failed)} failed step(s)",
                                               failed_steps=run.failed)

            self._finish(event, run, start)
            await self._persist(event)
            if error:
                logger.critical(f"{label.capitalize()} FAILED: {error}")
                await self.alert(AlertSeverity.CRITICAL, f"{label.capitalize()} FAILED - manual intervention required",
                                  {**ctx, "failed_steps": list(run.failed)})
            else:
                logger.info(f"{label.capitalize()} completed successfully in {event.duration_ms:.0f}ms")
                await self.alert(AlertSeverity.INFO, f"{label.capitalize()} completed successfully", ctx)
            return RollbackResult(error is None, scope, reason, event, error, run.steps, run.failed)
        finally:
            try:
                await self.leases.release(key, holder)
            except Exception as e:
                logger.error(f"Failed to release rollback lease {key} (expires on its own): {e}")

    @staticmethod
    def _finish(event: RollbackEvent, run: _Run, start: float) -> None:
        event.failed_steps = list(run.failed)
        event.status = RollbackStatus.FAILED if run.failed else RollbackStatus.SUCCEEDED
        event.completed_at = utcnow()
        event.duration_ms = (time.monotonic() - start) * 1000

    # --- Steps ---
    async def _write_flag(self, name: str, enabled: bool, percentage: int) -> None:
        await retry_call(self.flags.update_flag, name, enabled, percentage, self.actor, config=self.retry)

    async def _set_flags(self, run: _Run, names, enabled: bool, percentage: int) -> None:
        failed = []
        for name in names:
            try:
                await self._write_flag(name, enabled, percentage)
            except RolloutError as e:
                failed.append(name)
                logger.error(f"Failed to set {name}={enabled} ({percentage}%): {e}")
                if not run.force:
                    raise
        if failed:
            raise RollbackExecutionError(f"failed to set {len(failed)} flag(s): {', '.join(failed)}")

    async def _drain(self, run: _Run) -> None:
        for i, pct in enumerate(DRAIN_SEQUENCE):
            logger.info(f"Reducing package traffic to {pct}%")
            await self._set_flags(run, self.managed_flags, pct > 0, pct)
            if i < len(DRAIN_SEQUENCE) - 1:
                await asyncio.sleep(self.timings.drain_interval)

    async def _wait_for_sessions(self) -> None:
        deadline = time.monotonic() + self.timings.session_wait
        while True:
            try:
                active = await self.platform.active_sessions()
            except Exception as e:
                logger.warning(f"Active session count unavailable: {e}")
                active = 0
            if active <= 0:
                logger.info("All active sessions completed")
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Session wait timed out with {active} active sessions remaining")
                return
            logger.info(f"Waiting for {active} active sessions to complete")
            await asyncio.sleep(min(self.timings.session_poll, remaining))

    async def _restore_latest_state(self) -> None:
        if not await self.platform.restore_service_state(None):
            logger.warning("No service state backup found to restore")

    async def _restore_state(self, service: str) -> None:
        if not await self.platform.restore_service_state(service):
            logger.warning(f"No preserved state found for {service}")

    async def _stop_services(self, run: _Run) -> None:
        await self.platform.stop_services(sorted(SERVICE_FLAGS))
        await self._set_flags(run, self.managed_flags, False, 0)

    async def _reset_flags(self, run: _Run) -> None:
        names = set(self.managed_flags)
        for f in await self.flags.list_flags():
            if f.name != LEGACY_ROUTING_FLAG and (f.name.endswith("package-enabled") or "migration" in f.name):
                names.add(f.name)
        await self._set_flags(run, sorted(names), False, 0)

    async def _reroute_to_legacy(self) -> None:
        logger.info("Rerouting traffic to legacy systems")
        await self._write_flag(LEGACY_ROUTING_FLAG, True, 100)

    # --- Validation ---
    async def _flags_disabled(self, names, reset: bool = False) -> list[str]:
        bad = []
        for name in names:
            f = await self.flags.get_flag(name)
            if f and (f.enabled or (reset and f.rollout_percentage != 0)):
                bad.append(name)
        return bad

    async def _legacy_routing_active(self) -> bool:
        f = await self.flags.get_flag(LEGACY_ROUTING_FLAG)
        return bool(f and f.enabled and f.rollout_percentage == 100)

    async def _validate_disabled(self, names) -> None:
        bad = await self._flags_disabled(names)
        if bad: raise RollbackExecutionError(f"flags still enabled: {', '.join(bad)}")

    async def _validate_immediate(self) -> None:
        bad, routed = await self._flags_disabled(self.managed_flags), await self._legacy_routing_active()
        if bad or not routed:
            raise RollbackExecutionError(f"immediate rollback validation failed - packages_disabled: {not bad}, "
                                         f"traffic_routed: {routed}")

    async def _validate_graceful(self) -> None:
        t = self.timings
        err, lat = await self.metrics.error_rate(300), await self.metrics.latency_ms(300)
        if not (err < t.graceful_max_error_rate and lat < t.graceful_max_latency_ms):
            raise RollbackExecutionError(f"graceful rollback validation failed - error_rate: {err:.2%}, latency: {lat:.0f}ms")

    async def _validate_complete(self) -> None:
        t = self.timings
        names = set(self.managed_flags) | {f.name for f in await self.flags.list_flags() if f.name != LEGACY_ROUTING_FLAG
                                           and (f.name.endswith("package-enabled") or "migration" in f.name)}
        disabled = not await self._flags_disabled(self.managed_flags)
        reset = not await self._flags_disabled(sorted(names), reset=True)
        routed = await self._legacy_routing_active()
        err, lat = await self.metrics.error_rate(300), await self.metrics.latency_ms(300)
        stable = err < t.stable_max_error_rate and lat < t.stable_max_latency_ms
        if not (disabled and routed and reset and stable):
            raise RollbackExecutionError(f"complete rollback validation failed - disabled: {disabled}, routed: {routed}, "
                                         f"reset: {reset}, stable: {stable}")

__all__ = ["RollbackOrchestrator", "RollbackResult", "RollbackTimings", "ServiceRollback", "SERVICE_ROLLBACKS",
           "SERVICE_FLAGS", "MANAGED_FLAGS", "DRAIN_SEQUENCE", "LEGACY_ROUTING_FLAG", "STEP_PLANS"]
