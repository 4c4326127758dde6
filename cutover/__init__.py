"""Cutover - progressive rollout controller with health monitoring and automatic rollback."""
from .errors import (RolloutError, ConfigurationError, ValidationError, MetricsUnavailableError, FlagUpdateError,
                     RollbackInProgressError, RollbackExecutionError, PhaseTransitionError)
from .models import (PhaseStatus, HealthSample, RolloutPhase, FeatureFlag, Checkpoint, CheckpointStatus,
                     RollbackScope, RollbackStatus, RollbackEvent, AlertSeverity)
from .stores import Backend, FlagStore, MetricsSource, CheckpointStore, AlertSink, LeaseStore, RollbackLog, Platform
from .adapters import RetryConfig, retry_call, with_retry, ResilientMetrics
from .config import RolloutSettings, build_backend, configure_logging
from .monitoring import HealthMonitor, HealthThresholds, Verdict, VerdictKind, classify
from .rollback import RollbackOrchestrator, RollbackResult, RollbackTimings
from .rollout import PhaseController, PhaseDefinition, PhaseResult, DEFAULT_PHASES
from .memory_store import build_memory_backend
from .sqlite_store import build_sqlite_backend

__all__ = [
    # Errors
    "RolloutError", "ConfigurationError", "ValidationError", "MetricsUnavailableError", "FlagUpdateError",
    "RollbackInProgressError", "RollbackExecutionError", "PhaseTransitionError",
    # Models
    "PhaseStatus", "HealthSample", "RolloutPhase", "FeatureFlag", "Checkpoint", "CheckpointStatus",
    "RollbackScope", "RollbackStatus", "RollbackEvent", "AlertSeverity",
    # Collaborators
    "Backend", "FlagStore", "MetricsSource", "CheckpointStore", "AlertSink", "LeaseStore", "RollbackLog", "Platform",
    "build_memory_backend", "build_sqlite_backend", "build_backend",
    # Adapters / config
    "RetryConfig", "retry_call", "with_retry", "ResilientMetrics", "RolloutSettings", "configure_logging",
    # Monitoring
    "HealthMonitor", "HealthThresholds", "Verdict", "VerdictKind", "classify",
    # Rollback
    "RollbackOrchestrator", "RollbackResult", "RollbackTimings",
    # Rollout
    "PhaseController", "PhaseDefinition", "PhaseResult", "DEFAULT_PHASES",
]
__version__ = "1.0.0"
