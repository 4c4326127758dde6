"""Tests for PhaseController: gating, ramping, monitoring outcome, rollback, interruption."""
import asyncio
import logging
import pytest

from ..errors import ConfigurationError, FlagUpdateError, RollbackExecutionError, RollbackInProgressError
from ..memory_store import build_memory_backend
from ..models import AlertSeverity, CheckpointStatus, PhaseStatus, RollbackScope, RollbackStatus
from ..rollback import RollbackOrchestrator
from ..rollout import DEFAULT_PHASES, PhaseController, PhaseDefinition
from .mocks import FailingFlagStore, FailingPlatform, LockedLeaseStore, ScriptedMetrics


async def complete_phase(controller, phase_id, pct=10):
    result = await controller.run_phase(phase_id, pct)
    assert result.success, result.reason
    return result


@pytest.mark.asyncio
class TestGating:
    """Phase ordering and argument checks."""

    async def test_phase2_requires_phase1_checkpoint(self, backend, controller):
        result = await controller.run_phase("phase2", 10)
        assert not result.success
        assert isinstance(result.error, ConfigurationError)
        assert result.reason == "predecessor phase incomplete"
        assert result.phase is None
        assert backend.flags.update_calls == []

    async def test_pending_checkpoint_does_not_satisfy_gate(self, backend, controller):
        await backend.checkpoints.create_checkpoint("phase1", "low_risk_services_migrated:started", {},
                                                    status="pending")
        result = await controller.run_phase("phase2", 10)
        assert isinstance(result.error, ConfigurationError)

    async def test_phase2_runs_after_phase1(self, backend, controller):
        await complete_phase(controller, "phase1")
        result = await controller.run_phase("phase2", 25)
        assert result.success
        assert backend.platform.dual_write

    async def test_unknown_phase(self, controller):
        result = await controller.run_phase("phase9", 10)
        assert isinstance(result.error, ConfigurationError)

    @pytest.mark.parametrize("pct", [-1, 101, 12.5])
    async def test_bad_percentage(self, controller, pct):
        result = await controller.run_phase("phase1", pct)
        assert isinstance(result.error, ConfigurationError)

    async def test_concurrent_phase_rejected(self, controller):
        first = asyncio.create_task(controller.run_phase("phase1", 10))
        await asyncio.sleep(0.005)
        second = await controller.run_phase("phase1", 10)
        assert isinstance(second.error, ConfigurationError)
        assert "still active" in second.reason
        assert (await first).success


@pytest.mark.asyncio
class TestHealthyPhase:
    """Ramp, monitor window, checkpoint."""

    async def test_ramps_every_phase_flag(self, backend, controller):
        result = await controller.run_phase("phase1", 10)
        assert result.success
        assert result.phase.status == PhaseStatus.COMPLETED
        for name in DEFAULT_PHASES[0].flags:
            f = await backend.flags.get_flag(name)
            assert (f.enabled, f.rollout_percentage, f.updated_by) == (True, 10, "progressive-migration")

    async def test_writes_pending_then_completed_checkpoint(self, backend, controller):
        result = await controller.run_phase("phase1", 10)
        cps = await backend.checkpoints.list_checkpoints("phase1")
        assert [c.status for c in cps] == [CheckpointStatus.PENDING, CheckpointStatus.COMPLETED]
        assert cps[-1].checkpoint_id == result.checkpoint_id
        assert cps[-1].metrics["traffic_percentage"] == 10
        assert "error_rate" in cps[-1].metrics

    async def test_phase3_preserves_circuit_breaker_state(self, backend, controller):
        await complete_phase(controller, "phase1")
        await complete_phase(controller, "phase2")
        await complete_phase(controller, "phase3", 5)
        assert "preserve_service_state:circuit-breaker" in backend.platform.calls

    async def test_progress_and_report(self, controller):
        await complete_phase(controller, "phase1")
        assert await controller.progress() == {"phase1": True, "phase2": False, "phase3": False}
        report = await controller.generate_report()
        assert "Completed Phases: phase1" in report

    async def test_status_lists_rollback_scopes(self, controller):
        scopes = {p["phase_id"]: p["rollback_scope"] for p in controller.status()["phases"]}
        assert scopes == {"phase1": "graceful", "phase2": "graceful", "phase3": "immediate"}


@pytest.mark.asyncio
class TestBreach:
    """Breach triggers exactly one automatic rollback."""

    async def test_error_breach_rolls_back(self, backend, controller):
        backend.metrics.error = 0.08
        result = await controller.run_phase("phase1", 10)
        assert not result.success
        assert result.reason == "error_rate_exceeded"
        assert result.phase.status == PhaseStatus.ROLLED_BACK
        assert result.rollback.scope == RollbackScope.GRACEFUL
        assert len(backend.rollback_log.events) == 1
        assert await backend.checkpoints.latest_completed("phase1") is None

    async def test_phase3_uses_immediate_rollback(self, backend, controller):
        await complete_phase(controller, "phase1")
        await complete_phase(controller, "phase2")
        backend.metrics.latency = 700
        result = await controller.run_phase("phase3", 5)
        assert result.reason == "latency_degradation"
        assert result.rollback.scope == RollbackScope.IMMEDIATE

    async def test_reason_on_failure_is_appended(self, backend, controller):
        backend.metrics.integrity = False
        result = await controller.run_phase("phase1", 10, reason_on_failure="canary")
        assert result.rollback.event.reason == "data_integrity_failure: canary"

    async def test_breach_mid_window(self, fast_settings, fast_retry, fast_timings):
        backend = build_memory_backend()
        backend.metrics = ScriptedMetrics(error_rates=[0.01, 0.02, 0.09])
        orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
        fast_settings.max_monitor_duration = 5.0
        controller = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
        result = await controller.run_phase("phase1", 10)
        assert result.reason == "error_rate_exceeded"
        assert result.phase.last_sample.error_rate == 0.09

    async def test_rollback_already_running_is_treated_as_handled(self, backend, controller):
        backend.metrics.error = 0.5
        await backend.leases.acquire("graceful", "someone-else", 60)
        result = await controller.run_phase("phase1", 10)
        assert result.phase.status == PhaseStatus.ROLLED_BACK
        assert isinstance(result.error, RollbackInProgressError)
        [event] = backend.rollback_log.events.values()
        assert event.status == RollbackStatus.FAILED
        assert event.failed_steps == ["lease_unavailable"]
        assert result.error.details["event_id"] == event.event_id

    async def test_service_scoped_phase(self, backend, orchestrator, fast_settings, fast_retry):
        phases = (PhaseDefinition("cache-only", 1, "cache_migrated", ("cache-package-enabled",), service="cache"),)
        controller = PhaseController.from_backend(backend, fast_settings, orchestrator=orchestrator,
                                                  retry=fast_retry, phases=phases)
        backend.metrics.error = 0.2
        result = await controller.run_phase("cache-only", 20)
        assert result.rollback.scope == RollbackScope.SERVICE
        assert result.rollback.event.service == "cache"


@pytest.mark.asyncio
class TestDryRun:
    """Dry runs evaluate and log but never write flags."""

    async def test_healthy_dry_run(self, backend, controller):
        result = await controller.run_phase("phase1", 10, dry_run=True)
        assert result.success
        assert result.checkpoint_id is None
        assert backend.flags.update_calls == []
        assert await backend.checkpoints.list_checkpoints() == []

    async def test_breaching_dry_run_plans_rollback_only(self, backend, controller):
        backend.metrics.error = 0.2
        result = await controller.run_phase("phase1", 10, dry_run=True)
        assert result.reason == "error_rate_exceeded"
        assert result.rollback.dry_run
        assert backend.flags.update_calls == []
        assert backend.rollback_log.events == {}

    async def test_dry_run_verdict_matches_live(self, fast_settings, fast_retry, fast_timings):
        reasons = []
        for dry in (True, False):
            backend = build_memory_backend(latency_ms=600)
            orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
            c = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
            reasons.append((await c.run_phase("phase1", 10, dry_run=dry)).reason)
        assert reasons == ["latency_degradation", "latency_degradation"]

    async def test_dry_run_logs_match_live_apart_from_prefix(self, fast_settings, fast_retry, fast_timings, caplog):
        caplog.set_level(logging.INFO, logger="cutover")
        lines = {}
        for dry in (True, False):
            caplog.clear()
            backend = build_memory_backend(latency_ms=600)
            orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
            c = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
            await c.run_phase("phase1", 10, dry_run=dry)
            lines[dry] = [(r.levelname, r.getMessage().removeprefix("[DRY RUN] ")) for r in caplog.records
                          if r.name == "cutover.monitoring" or "Feature flag updated" in r.getMessage()]
        assert lines[True] == lines[False]
        assert ("INFO", "Feature flag updated: cv-analyzer-package-enabled = true (10%)") in lines[True]


@pytest.mark.asyncio
class TestFailures:
    """Ramp failures and interruption."""

    async def test_flag_failure_fails_phase_without_rollback(self, fast_settings, fast_retry, fast_timings):
        backend = build_memory_backend()
        backend.flags = FailingFlagStore(fail_names={"improvement-orchestrator-package-enabled"})
        orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
        controller = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
        result = await controller.run_phase("phase1", 10)
        assert result.reason == "flag_update_failed"
        assert isinstance(result.error, FlagUpdateError)
        assert result.phase.status == PhaseStatus.FAILED
        assert backend.flags.attempts.count("improvement-orchestrator-package-enabled") == 2
        [failed] = [c for c in await backend.checkpoints.list_checkpoints("phase1") if c.status == CheckpointStatus.FAILED]
        assert failed.milestone == "low_risk_services_migrated:failed"
        assert failed.metrics["error"]["error_code"] == "FLAG_UPDATE_FAILED"
        assert await backend.checkpoints.latest_completed("phase1") is None
        assert backend.rollback_log.events == {}

    async def test_transient_flag_failure_is_retried(self, fast_settings, fast_retry, fast_timings):
        backend = build_memory_backend()
        backend.flags = FailingFlagStore(fail_names={"cv-analyzer-package-enabled"}, fail_times=1)
        orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
        controller = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
        assert (await controller.run_phase("phase1", 10)).success

    async def test_pre_step_failure(self, fast_settings, fast_retry, fast_timings):
        backend = build_memory_backend()
        backend.platform = FailingPlatform(fail={"enable_dual_write_cache"})
        orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
        controller = PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)
        await complete_phase(controller, "phase1")
        result = await controller.run_phase("phase2", 10)
        assert result.reason == "pre_step_failed"
        assert result.phase.status == PhaseStatus.FAILED

    async def test_interrupt_rolls_back(self, backend, controller):
        controller.settings.max_monitor_duration = 10.0
        task = asyncio.create_task(controller.run_phase("phase1", 10))
        await asyncio.sleep(0.05)
        controller.interrupt()
        result = await task
        assert result.reason == "interrupted"
        assert result.phase.status == PhaseStatus.ROLLED_BACK
        assert len(backend.rollback_log.events) == 1

    async def test_cancellation_rolls_back_then_propagates(self, backend, controller):
        controller.settings.max_monitor_duration = 10.0
        task = asyncio.create_task(controller.run_phase("phase1", 10))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert controller.active.status == PhaseStatus.ROLLED_BACK
        event = next(iter(backend.rollback_log.events.values()))
        assert event.reason == "interrupted"


@pytest.mark.asyncio
class TestRollbackErrors:
    """A rollback that raises still ends the phase in a recorded terminal state."""

    def locked(self, fast_settings, fast_retry, fast_timings, **metrics):
        backend = build_memory_backend(**metrics)
        backend.leases = LockedLeaseStore()
        orch = RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)
        return backend, PhaseController.from_backend(backend, fast_settings, orchestrator=orch, retry=fast_retry)

    async def test_lease_store_error_is_contained(self, fast_settings, fast_retry, fast_timings):
        backend, controller = self.locked(fast_settings, fast_retry, fast_timings, error_rate=0.2)
        result = await controller.run_phase("phase1", 10)
        assert not result.success
        assert result.reason == "error_rate_exceeded"
        assert result.phase.status == PhaseStatus.ROLLED_BACK
        assert result.phase.terminal
        assert isinstance(result.error, RollbackExecutionError)
        assert "database is locked" in result.error.message
        assert any(sev == AlertSeverity.CRITICAL and "manual intervention" in msg
                   for sev, msg, _ in backend.alerts.alerts)
        [failed] = [c for c in await backend.checkpoints.list_checkpoints("phase1") if c.status == CheckpointStatus.FAILED]
        assert failed.metrics["error"]["error_code"] == "ROLLBACK_FAILED"

    async def test_next_run_is_not_blocked(self, fast_settings, fast_retry, fast_timings):
        backend, controller = self.locked(fast_settings, fast_retry, fast_timings, error_rate=0.2)
        await controller.run_phase("phase1", 10)
        backend.metrics.error = 0.01
        second = await controller.run_phase("phase1", 10)
        assert second.phase is not None
        assert "still active" not in second.reason
        assert second.success

    async def test_interrupt_with_broken_lease_store(self, fast_settings, fast_retry, fast_timings):
        backend, controller = self.locked(fast_settings, fast_retry, fast_timings)
        controller.settings.max_monitor_duration = 10.0
        task = asyncio.create_task(controller.run_phase("phase1", 10))
        await asyncio.sleep(0.05)
        controller.interrupt()
        result = await task
        assert result.reason == "interrupted"
        assert result.phase.status == PhaseStatus.ROLLED_BACK
        assert isinstance(result.error, RollbackExecutionError)
