"""Cutover Test Configuration - Shared fixtures and hooks."""
from __future__ import annotations
import pytest

from ..adapters import RetryConfig
from ..config import RolloutSettings
from ..memory_store import build_memory_backend
from ..rollback import RollbackOrchestrator, RollbackTimings
from ..rollout import PhaseController


# --- Pytest Configuration ---
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "sqlite: marks tests that touch an on-disk database")


# --- Common Fixtures ---
@pytest.fixture
def fast_retry() -> RetryConfig:
    """One retry, no backoff."""
    return RetryConfig(max_retries=1, base_delay=0.0, timeout=1.0)


@pytest.fixture
def fast_timings() -> RollbackTimings:
    """Rollback timings scaled down to milliseconds."""
    return RollbackTimings(drain_interval=0.0, session_wait=0.05, session_poll=0.01, lease_timeout=0.05, lease_poll=0.01)


@pytest.fixture
def fast_settings() -> RolloutSettings:
    """Monitoring window of ~5 ticks."""
    return RolloutSettings(backend="memory", monitor_interval=0.01, max_monitor_duration=0.05, drain_interval=0.0,
                           session_wait=0.05, lease_timeout=0.05)


@pytest.fixture
def backend():
    """Healthy in-memory backend."""
    return build_memory_backend()


@pytest.fixture
def orchestrator(backend, fast_timings, fast_retry) -> RollbackOrchestrator:
    return RollbackOrchestrator.from_backend(backend, timings=fast_timings, retry=fast_retry)


@pytest.fixture
def controller(backend, orchestrator, fast_settings, fast_retry) -> PhaseController:
    return PhaseController.from_backend(backend, fast_settings, orchestrator=orchestrator, retry=fast_retry)


@pytest.fixture
def db_path(tmp_path):
    """Fresh sqlite database path per test."""
    return str(tmp_path / "cutover.db")
