"""Tests for rollback strategies, single-flight leases and failure recording."""
import asyncio
import dataclasses
import pytest

from ..errors import ConfigurationError, RollbackExecutionError, RollbackInProgressError
from ..memory_store import build_memory_backend
from ..models import AlertSeverity, RollbackScope, RollbackStatus
from ..rollback import (DRAIN_SEQUENCE, LEGACY_ROUTING_FLAG, MANAGED_FLAGS, STEP_PLANS, RollbackOrchestrator)
from .mocks import FailingFlagStore, FailingPlatform, LockedLeaseStore


def make(backend, timings, retry, **overrides) -> RollbackOrchestrator:
    for name, value in overrides.items():
        setattr(backend, name, value)
    return RollbackOrchestrator.from_backend(backend, timings=timings, retry=retry)


async def enable_all(flags, pct=50):
    for name in MANAGED_FLAGS:
        await flags.update_flag(name, True, pct, "test")


@pytest.mark.asyncio
class TestImmediate:
    """Disable, reroute, best-effort cache clear, validate."""

    async def test_disables_every_managed_flag(self, backend, orchestrator):
        await enable_all(backend.flags)
        result = await orchestrator.immediate("error_rate_exceeded")
        assert result.success
        for name in MANAGED_FLAGS:
            f = await backend.flags.get_flag(name)
            assert (f.enabled, f.rollout_percentage) == (False, 0)
        legacy = await backend.flags.get_flag(LEGACY_ROUTING_FLAG)
        assert (legacy.enabled, legacy.rollout_percentage) == (True, 100)
        assert result.steps == list(STEP_PLANS[RollbackScope.IMMEDIATE])

    async def test_cache_clear_failure_is_not_fatal(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, platform=FailingPlatform(fail={"clear_package_cache"}))
        result = await orch.immediate("manual")
        assert result.success
        assert result.failed_steps == []

    async def test_alerts_on_initiation_and_success(self, backend, orchestrator):
        await orchestrator.immediate("manual")
        severities = [a[0] for a in backend.alerts.alerts]
        assert severities == [AlertSeverity.CRITICAL, AlertSeverity.INFO]

    async def test_event_recorded_and_lease_released(self, backend, orchestrator):
        result = await orchestrator.immediate("manual")
        assert result.event.status == RollbackStatus.SUCCEEDED
        assert result.event.event_id in backend.rollback_log.events
        assert not backend.leases.held("immediate")

    async def test_flag_failure_without_force_fails_fast(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, flags=FailingFlagStore(fail_names={MANAGED_FLAGS[0]}))
        result = await orch.immediate("manual")
        assert not result.success
        assert isinstance(result.error, RollbackExecutionError)
        assert result.failed_steps == ["disable_package_services"]
        assert result.event.status == RollbackStatus.FAILED
        assert backend.alerts.alerts[-1][0] == AlertSeverity.CRITICAL
        assert "manual intervention required" in backend.alerts.alerts[-1][1]


@pytest.mark.asyncio
class TestGraceful:
    """Stepwise drain, session wait, reroute."""

    async def test_drain_sequence_is_literal(self, backend, orchestrator):
        await enable_all(backend.flags)
        backend.flags.update_calls.clear()
        result = await orchestrator.graceful("latency_degradation")
        assert result.success
        seen = [pct for name, _, pct, _ in backend.flags.update_calls if name == MANAGED_FLAGS[0]]
        assert seen == list(DRAIN_SEQUENCE)
        enabled = [en for name, en, _, _ in backend.flags.update_calls if name == MANAGED_FLAGS[0]]
        assert enabled == [True, True, True, True, False]

    async def test_completes_within_budget(self, backend, orchestrator):
        result = await orchestrator.graceful("latency_degradation")
        assert result.success
        assert result.event.duration_ms < orchestrator.timings.graceful_budget * 1000

    async def test_budget_exceeded_is_recorded(self, backend, fast_retry):
        timings = dataclasses.replace(RollbackOrchestrator.from_backend(backend).timings,
                                      graceful_budget=0.05, drain_interval=0.1, lease_timeout=0.05)
        orch = RollbackOrchestrator.from_backend(backend, timings=timings, retry=fast_retry)
        result = await orch.graceful("latency_degradation")
        assert not result.success
        assert "budget_exceeded" in result.failed_steps
        assert result.event.status == RollbackStatus.FAILED
        assert backend.alerts.alerts[-1][0] == AlertSeverity.CRITICAL

    async def test_waits_for_sessions_then_proceeds(self, backend, orchestrator):
        backend.platform.sessions = 3
        result = await orchestrator.graceful("manual")
        assert result.success
        assert "wait_for_sessions" in result.steps

    async def test_unhealthy_validation_fails(self, backend, orchestrator):
        backend.metrics.error = 0.10
        result = await orchestrator.graceful("manual")
        assert not result.success
        assert result.failed_steps == ["validate"]


@pytest.mark.asyncio
class TestComplete:
    """Full restoration with force semantics."""

    async def test_forced_run_continues_past_failing_step(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        platform = FailingPlatform(fail={"restore_legacy_config"})
        orch = make(backend, fast_timings, fast_retry, platform=platform)
        result = await orch.complete("manual", force=True)
        assert not result.success
        assert result.failed_steps == ["restore_legacy_config"]
        assert "reroute_to_legacy" in result.steps and "validate" in result.steps
        assert result.event.status == RollbackStatus.FAILED
        assert backend.rollback_log.events[result.event.event_id].status == RollbackStatus.FAILED
        assert backend.alerts.alerts[-1][0] == AlertSeverity.CRITICAL

    async def test_unforced_run_stops_at_failing_step(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, platform=FailingPlatform(fail={"restore_legacy_config"}))
        result = await orch.complete("manual")
        assert result.failed_steps == ["restore_legacy_config"]
        assert "reroute_to_legacy" not in result.steps

    async def test_resets_migration_flags_and_clears_checkpoints(self, backend, orchestrator):
        await backend.flags.update_flag("schema-migration-v2", True, 40, "test")
        await backend.checkpoints.create_checkpoint("phase1", "done", {})
        result = await orchestrator.complete("manual")
        assert result.success
        f = await backend.flags.get_flag("schema-migration-v2")
        assert (f.enabled, f.rollout_percentage) == (False, 0)
        assert await backend.checkpoints.list_checkpoints() == []
        assert backend.platform.calls[:2] == ["stop_services", "restore_all_data"]


@pytest.mark.asyncio
class TestServiceRollback:
    """Per-service rollbacks."""

    async def test_cache_rollback_clears_cache(self, backend, orchestrator):
        await backend.flags.update_flag("cache-package-enabled", True, 50, "test")
        result = await orchestrator.execute("service", "manual", service="cache")
        assert result.success
        assert "clear_package_cache" in backend.platform.calls
        assert not (await backend.flags.get_flag("cache-package-enabled")).enabled

    async def test_circuit_breaker_restores_state(self, backend, orchestrator):
        result = await orchestrator.service("circuit-breaker", "manual")
        assert result.success
        assert "restore_service_state:circuit-breaker" in backend.platform.calls

    async def test_recommendations_disables_three_flags(self, backend, orchestrator):
        await orchestrator.service("recommendations", "manual")
        names = {c[0] for c in backend.flags.update_calls}
        assert names == {"recommendations-package-enabled", "recommendation-generator-package-enabled",
                         "recommendation-orchestrator-package-enabled"}

    async def test_unknown_service_is_configuration_error(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.execute("service", "manual", service="billing")


@pytest.mark.asyncio
class TestDispatch:
    """execute() routing, dry runs and single-flight."""

    async def test_unknown_scope(self, orchestrator):
        with pytest.raises(ConfigurationError):
            await orchestrator.execute("partial", "manual")

    async def test_dry_run_mutates_nothing(self, backend, orchestrator):
        result = await orchestrator.execute(RollbackScope.COMPLETE, "manual", dry_run=True)
        assert result.dry_run and result.success
        assert result.steps == list(STEP_PLANS[RollbackScope.COMPLETE])
        assert backend.flags.update_calls == []
        assert backend.rollback_log.events == {}
        assert backend.platform.calls == []

    async def test_concurrent_same_scope_executes_once(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, platform=FailingPlatform(delay=0.2))
        results = await asyncio.gather(orch.execute("immediate", "a"), orch.execute("immediate", "b"),
                                       return_exceptions=True)
        rejected = [r for r in results if isinstance(r, RollbackInProgressError)]
        assert len(rejected) == 1
        events = list(backend.rollback_log.events.values())
        assert len(events) == 2
        assert [e.failed_steps for e in events].count(["lease_unavailable"]) == 1
        assert [e.status for e in events].count(RollbackStatus.SUCCEEDED) == 1
        assert backend.platform.calls.count("clear_package_cache") == 1

    async def test_lost_lease_is_recorded_and_alerted(self, backend, orchestrator):
        await backend.leases.acquire("graceful", "other-operator", 60)
        with pytest.raises(RollbackInProgressError) as exc:
            await orchestrator.graceful("manual")
        [event] = backend.rollback_log.events.values()
        assert event.status == RollbackStatus.FAILED
        assert event.failed_steps == ["lease_unavailable"]
        assert event.completed_at is not None
        assert exc.value.details["event_id"] == event.event_id
        [(severity, message, ctx)] = backend.alerts.alerts
        assert severity == AlertSeverity.HIGH
        assert "already in progress" in message
        assert ctx["event_id"] == event.event_id
        assert backend.flags.update_calls == []

    async def test_lease_release_error_does_not_fail_rollback(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, leases=LockedLeaseStore(fail_acquire=False, fail_release=True))
        result = await orch.service("cache", "manual")
        assert result.success
        assert result.event.status == RollbackStatus.SUCCEEDED

    async def test_different_scopes_do_not_block(self, backend, orchestrator):
        a, b = await asyncio.gather(orchestrator.execute("service", "x", service="cache"),
                                    orchestrator.execute("service", "y", service="cv-analyzer"))
        assert a.success and b.success

    async def test_cancellation_records_event_and_releases_lease(self, fast_timings, fast_retry):
        backend = build_memory_backend()
        orch = make(backend, fast_timings, fast_retry, platform=FailingPlatform(delay=1.0))
        task = asyncio.create_task(orch.complete("manual"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        event = next(iter(backend.rollback_log.events.values()))
        assert "cancelled" in event.failed_steps
        assert not backend.leases.held("complete")
