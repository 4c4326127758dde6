"""Cutover phase controller.

Drives one rollout phase at a time from the legacy implementation to the packaged one.

Phases:
1. phase1 - Low-risk services (cv-analyzer, improvement-orchestrator)
2. phase2 - Medium-risk services (cache with dual-write, recommendation-generator)
3. phase3 - Critical services (circuit-breaker with state preservation, orchestrators)

Per phase: gate on predecessor checkpoint -> ramp flags -> monitor -> checkpoint | rollback.
"""
from __future__ import annotations
import asyncio, json, logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .adapters import RetryConfig, retry_call
from .config import RolloutSettings
from .errors import ConfigurationError, FlagUpdateError, RollbackExecutionError, RollbackInProgressError, RolloutError
from .models import AlertSeverity, CheckpointStatus, PhaseStatus, RollbackScope, RolloutPhase, check_percentage
from .monitoring import HealthMonitor, HealthThresholds, Verdict, VerdictKind, breach
from .rollback import RollbackOrchestrator, RollbackResult, RollbackTimings

if TYPE_CHECKING:
    from .stores import Backend

logger = logging.getLogger("cutover.rollout")

@dataclass(frozen=True)
class PhaseDefinition:
    phase_id: str; position: int; milestone: str
    flags: tuple[str, ...]
    rollback_scope: RollbackScope | None = None
    service: str | None = None  # service-level phases roll back with the service scope
    pre_steps: tuple[str, ...] = ()

DEFAULT_PHASES: tuple[PhaseDefinition, ...] = (
    PhaseDefinition("phase1", 1, "low_risk_services_migrated",
                    ("cv-analyzer-package-enabled", "improvement-orchestrator-package-enabled")),
    PhaseDefinition("phase2", 2, "medium_risk_services_migrated",
                    ("cache-package-enabled", "recommendation-generator-package-enabled"),
                    pre_steps=("enable_dual_write_cache",)),
    PhaseDefinition("phase3", 3, "critical_services_migrated",
                    ("circuit-breaker-package-enabled", "recommendation-orchestrator-package-enabled",
                     "action-orchestrator-package-enabled"),
                    rollback_scope=RollbackScope.IMMEDIATE, pre_steps=("preserve_service_state:circuit-breaker",)),
)

@dataclass
class PhaseResult:
    success: bool; phase: RolloutPhase | None; reason: str
    error: RolloutError | None = None; rollback: RollbackResult | None = None
    checkpoint_id: str | None = None; verdicts: list[Verdict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "reason": self.reason, "checkpoint_id": self.checkpoint_id,
                "phase": self.phase.to_dict() if self.phase else None,
                "error": self.error.to_dict() if self.error else None,
                "rollback": self.rollback.to_dict() if self.rollback else None}

class PhaseController:
    """State machine for a single active rollout phase."""

    def __init__(self, flags, metrics, checkpoints, orchestrator: RollbackOrchestrator, platform=None,
                 phases: tuple[PhaseDefinition, ...] = DEFAULT_PHASES, settings: RolloutSettings | None = None,
                 thresholds: HealthThresholds | None = None, retry: RetryConfig | None = None,
                 force_rollback: bool = False):
        self.flags = flags; self.metrics = metrics; self.checkpoints = checkpoints
        self.orchestrator = orchestrator; self.platform = platform
        self.settings = settings or RolloutSettings(backend="memory")
        self.thresholds = thresholds or HealthThresholds()
        self.retry = retry or RetryConfig()
        self.force_rollback = force_rollback
        self.phases = sorted(phases, key=lambda p: p.position)
        self._by_id = {p.phase_id: p for p in self.phases}
        self.active: RolloutPhase | None = None
        self.history: list[RolloutPhase] = []
        self._interrupt = asyncio.Event()
        self._lock = asyncio.Lock()

    @classmethod
    def from_backend(cls, backend: "Backend", settings: RolloutSettings | None = None, **kwargs) -> "PhaseController":
        s = settings or RolloutSettings.from_env()
        timings = RollbackTimings(drain_interval=s.drain_interval, session_wait=s.session_wait, lease_timeout=s.lease_timeout)
        orchestrator = kwargs.pop("orchestrator", None) or RollbackOrchestrator.from_backend(
            backend, timings=timings, retry=kwargs.get("retry"), actor=s.actor)
        return cls(backend.flags, backend.metrics, backend.checkpoints, orchestrator, backend.platform, settings=s, **kwargs)

    # --- Public API ---
    def interrupt(self) -> None:
        """External cancellation signal; the active phase rolls back with reason 'interrupted'."""
        if self.active and not self.active.terminal:
            logger.error(f"Interrupt received while {self.active.phase_id} is {self.active.status.value}")
        self._interrupt.set()

    def predecessor(self, phase_id: str) -> PhaseDefinition | None:
        idx = self.phases.index(self._by_id[phase_id])
        return self.phases[idx - 1] if idx > 0 else None

    def rollback_scope_for(self, definition: PhaseDefinition) -> tuple[RollbackScope, str | None]:
        if definition.service:
            return RollbackScope.SERVICE, definition.service
        return definition.rollback_scope or RollbackScope(self.settings.rollback_policy), None

    async def run_phase(self, phase_id: str, target_percentage: int, dry_run: bool = False,
                        reason_on_failure: str = "") -> PhaseResult:
        if self._lock.locked() or (self.active and not self.active.terminal):
            current = self.active.phase_id if self.active else "unknown"
            return self._reject(ConfigurationError(f"phase {current} is still active", details={"active": current}))
        async with self._lock:
            definition = self._by_id.get(phase_id)
            if definition is None:
                return self._reject(ConfigurationError(f"unknown rollout phase: {phase_id}",
                                                       details={"available": list(self._by_id)}))
            try:
                check_percentage(target_percentage)
            except ValueError as e:
                return self._reject(ConfigurationError(str(e), details={"phase_id": phase_id}))
            pred = self.predecessor(phase_id)
            if pred and await self.checkpoints.latest_completed(pred.phase_id) is None:
                return self._reject(ConfigurationError("predecessor phase incomplete",
                                                       details={"phase_id": phase_id, "predecessor": pred.phase_id}))

            phase = RolloutPhase(phase_id, definition.position, target_percentage, dry_run=dry_run)
            self.active = phase
            self.history.append(phase)
            self._interrupt = asyncio.Event()
            try:
                return await self._drive(definition, phase, dry_run, reason_on_failure)
            except asyncio.CancelledError:
                logger.error(f"{phase_id} interrupted while {phase.status.value} - triggering rollback")
                if phase.status in (PhaseStatus.RAMPING, PhaseStatus.MONITORING, PhaseStatus.VALIDATING):
                    await self._roll_back(definition, phase, "interrupted", reason_on_failure, dry_run)
                elif not phase.terminal:
                    phase.transition(PhaseStatus.FAILED, "interrupted")
                raise

    # --- Phase steps ---
    def _reject(self, error: ConfigurationError) -> PhaseResult:
        logger.error(f"Phase rejected: {error}")
        return PhaseResult(False, None, error.message, error=error)

    def _prefix(self, dry_run: bool) -> str:
        return "[DRY RUN] " if dry_run else ""

    async def _drive(self, d: PhaseDefinition, phase: RolloutPhase, dry_run: bool, reason_on_failure: str) -> PhaseResult:
        pre = self._prefix(dry_run)
        phase.transition(PhaseStatus.RAMPING)
        logger.info(f"{pre}Starting {d.phase_id} ({d.milestone}) with {phase.target_percentage}% traffic")
        if not dry_run:
            await self._checkpoint(phase, d, CheckpointStatus.PENDING, soft=True)
        try:
            await self._run_pre_steps(d, dry_run)
            await self._ramp(d, phase, dry_run)
        except RolloutError as e:
            logger.error(f"{pre}{d.phase_id} failed while ramping: {e}")
            await self._fail(d, phase, e, dry_run)
            return PhaseResult(False, phase, "flag_update_failed" if isinstance(e, FlagUpdateError) else e.error_code.lower(),
                               error=e)

        phase.transition(PhaseStatus.MONITORING)
        verdict = await self._await_verdict(phase)
        if verdict.kind != VerdictKind.HEALTHY_TIMEOUT:
            return await self._roll_back(d, phase, verdict.reason, reason_on_failure, dry_run)

        phase.transition(PhaseStatus.VALIDATING)
        checkpoint_id = None
        if dry_run:
            logger.info(f"{pre}Would create checkpoint {d.phase_id} - {d.milestone}")
        else:
            try:
                checkpoint_id = await self._checkpoint(phase, d, CheckpointStatus.COMPLETED)
            except RolloutError as e:
                await self._fail(d, phase, e, dry_run)
                return PhaseResult(False, phase, "checkpoint_failed", error=e)
        phase.transition(PhaseStatus.COMPLETED, verdict.reason)
        logger.info(f"{pre}Progressive migration {d.phase_id} complete")
        return PhaseResult(True, phase, verdict.reason, checkpoint_id=checkpoint_id, verdicts=[verdict])

    async def _run_pre_steps(self, d: PhaseDefinition, dry_run: bool) -> None:
        for step in d.pre_steps:
            if dry_run:
                logger.info(f"[DRY RUN] Pre-step {step} done"); continue
            name, _, arg = step.partition(":")
            try:
                if name == "enable_dual_write_cache": await self.platform.enable_dual_write_cache()
                elif name == "preserve_service_state": await self.platform.preserve_service_state(arg)
                else: raise ConfigurationError(f"unknown pre-step: {step}")
            except RolloutError:
                raise
            except Exception as e:
                raise RolloutError(f"pre-step {step} failed: {e}", error_code="PRE_STEP_FAILED") from e
            logger.info(f"Pre-step {step} done")

    async def _ramp(self, d: PhaseDefinition, phase: RolloutPhase, dry_run: bool) -> None:
        for name in d.flags:
            if dry_run:
                logger.info(f"[DRY RUN] Feature flag updated: {name} = true ({phase.target_percentage}%)")
                continue
            await retry_call(self.flags.update_flag, name, True, phase.target_percentage, self.settings.actor,
                             config=self.retry)
            logger.info(f"Feature flag updated: {name} = true ({phase.target_percentage}%)")

    async def _await_verdict(self, phase: RolloutPhase) -> Verdict:
        monitor = HealthMonitor(self.metrics, self.thresholds)
        watch = asyncio.create_task(monitor.run_until_terminal(phase, self.settings.monitor_interval,
                                                               self.settings.max_monitor_duration))
        stop = asyncio.create_task(self._interrupt.wait())
        try:
            done, _ = await asyncio.wait({watch, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (watch, stop):
                if not task.done(): task.cancel()
            await asyncio.gather(watch, stop, return_exceptions=True)
        if watch in done and not watch.cancelled():
            if watch.exception() is not None:
                logger.error(f"Health monitor for {phase.phase_id} crashed: {watch.exception()!r}")
                return breach("monitor_failure", phase.last_sample)
            return watch.result()
        return breach("interrupted", phase.last_sample)

    async def _roll_back(self, d: PhaseDefinition, phase: RolloutPhase, reason: str, reason_on_failure: str,
                         dry_run: bool) -> PhaseResult:
        phase.transition(PhaseStatus.ROLLING_BACK, reason)
        scope, service = self.rollback_scope_for(d)
        logger.error(f"{self._prefix(dry_run)}TRIGGERING AUTOMATIC ROLLBACK of {d.phase_id} ({scope.value}): {reason}")
        rb_reason = f"{reason}: {reason_on_failure}" if reason_on_failure else reason
        rollback, error = None, None
        try:
            try:
                rollback = await self.orchestrator.execute(scope, rb_reason, force=self.force_rollback, service=service,
                                                           dry_run=dry_run)
                error = rollback.error
            except RollbackInProgressError as e:
                logger.warning(f"Rollback for {d.phase_id} already in progress; treating as handled")
                error = e
            except ConfigurationError as e:
                logger.critical(f"Rollback for {d.phase_id} could not start: {e}")
                error = e
            except Exception as e:
                logger.critical(f"Rollback for {d.phase_id} raised {e!r} - manual intervention required")
                error = RollbackExecutionError(f"{scope.value} rollback of {d.phase_id} raised: {e}",
                                               details={"phase_id": d.phase_id, "scope": scope.value})
                error.__cause__ = e
                if not dry_run:
                    await self.orchestrator.alert(AlertSeverity.CRITICAL,
                                                  f"Automatic rollback of {d.phase_id} FAILED - manual intervention required",
                                                  {"phase_id": d.phase_id, "scope": scope.value, "reason": rb_reason,
                                                   "error": str(e)})
                    await self._checkpoint(phase, d, CheckpointStatus.FAILED, soft=True, error=error)
            phase.transition(PhaseStatus.ROLLED_BACK)
        finally:
            if not phase.terminal:
                phase.transition(PhaseStatus.FAILED, "rollback_interrupted")
        return PhaseResult(False, phase, reason, error=error, rollback=rollback,
                           verdicts=[breach(reason, phase.last_sample)])

    async def _fail(self, d: PhaseDefinition, phase: RolloutPhase, error: RolloutError, dry_run: bool) -> None:
        phase.transition(PhaseStatus.FAILED, error.message)
        if not dry_run:
            await self._checkpoint(phase, d, CheckpointStatus.FAILED, soft=True, error=error)

    async def _checkpoint(self, phase: RolloutPhase, d: PhaseDefinition, status: CheckpointStatus,
                          soft: bool = False, error: RolloutError | None = None) -> str | None:
        metrics = {"traffic_percentage": phase.target_percentage, "status": phase.status.value}
        if phase.last_sample: metrics.update(phase.last_sample.as_dict())
        if error is not None: metrics["error"] = error.to_dict()
        milestone = {CheckpointStatus.COMPLETED: d.milestone, CheckpointStatus.PENDING: f"{d.milestone}:started",
                     CheckpointStatus.FAILED: f"{d.milestone}:failed"}[status]
        try:
            cid = await self.checkpoints.create_checkpoint(d.phase_id, milestone, metrics, status=status.value)
        except Exception as e:
            logger.error(f"Failed to create {status.value} checkpoint for {d.phase_id}: {e}")
            if soft: return None
            raise RolloutError(f"checkpoint write failed: {e}", error_code="CHECKPOINT_FAILED") from e
        logger.info(f"Migration checkpoint created: {d.phase_id} - {milestone} ({status.value})")
        return cid

    # --- Reporting ---
    def status(self) -> dict[str, Any]:
        return {"active": self.active.to_dict() if self.active else None,
                "phases": [{"phase_id": p.phase_id, "position": p.position, "milestone": p.milestone,
                            "flags": list(p.flags), "rollback_scope": self.rollback_scope_for(p)[0].value}
                           for p in self.phases],
                "history_count": len(self.history)}

    async def progress(self) -> dict[str, bool]:
        return {p.phase_id: await self.checkpoints.latest_completed(p.phase_id) is not None for p in self.phases}

    async def generate_report(self) -> str:
        done = await self.progress()
        a = self.active
        return f"""Progressive Migration Status Report
===================================
Active Phase: {a.phase_id if a else 'none'} ({a.status.value if a else '-'})
Traffic: {a.target_percentage if a else 0}%
Completed Phases: {', '.join(k for k, v in done.items() if v) or 'none'}
Last Sample: {json.dumps(a.last_sample.as_dict() if a and a.last_sample else {}, indent=2)}
History: {len(self.history)} phase runs"""

__all__ = ["PhaseController", "PhaseDefinition", "PhaseResult", "DEFAULT_PHASES"]
