"""Cutover runtime configuration from environment variables."""
from __future__ import annotations
import logging, os, sys
from dataclasses import dataclass, fields
from pathlib import Path

from .errors import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "data" / "cutover.db")

ENV_KEYS = {
    "backend": "CUTOVER_BACKEND", "db_path": "CUTOVER_DB_PATH", "monitor_interval": "CUTOVER_MONITOR_INTERVAL",
    "max_monitor_duration": "CUTOVER_MAX_MONITOR_DURATION", "rollback_policy": "CUTOVER_ROLLBACK_POLICY",
    "actor": "CUTOVER_ACTOR", "lease_timeout": "CUTOVER_LEASE_TIMEOUT", "drain_interval": "CUTOVER_DRAIN_INTERVAL",
    "session_wait": "CUTOVER_SESSION_WAIT", "log_level": "LOG_LEVEL",
}


@dataclass
class RolloutSettings:
    backend: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    monitor_interval: float = 30.0
    max_monitor_duration: float = 1800.0
    rollback_policy: str = "graceful"
    actor: str = "progressive-migration"
    lease_timeout: float = 5.0
    drain_interval: float = 10.0
    session_wait: float = 60.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.backend not in ("sqlite", "memory"):
            raise ConfigurationError(f"unknown backend: {self.backend}")
        if self.rollback_policy not in ("graceful", "immediate"):
            raise ConfigurationError(f"rollback policy must be graceful or immediate, got {self.rollback_policy}")
        if self.monitor_interval <= 0 or self.max_monitor_duration <= 0:
            raise ConfigurationError("monitor interval and duration must be positive")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> "RolloutSettings":
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(ENV_KEYS[f.name])
            if raw is None or raw == "": continue
            if f.type in ("float", float):
                try:
                    values[f.name] = float(raw)
                except ValueError as e:
                    raise ConfigurationError(f"{ENV_KEYS[f.name]} must be a number, got {raw!r}") from e
            else:
                values[f.name] = raw.strip().lower() if f.name in ("backend", "rollback_policy") else raw
        values.update(overrides)
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


def build_backend(settings: RolloutSettings | None = None):
    """Backend selected by CUTOVER_BACKEND: sqlite at CUTOVER_DB_PATH, or in-memory."""
    s = settings or RolloutSettings.from_env()
    if s.backend == "memory":
        from .memory_store import build_memory_backend
        return build_memory_backend()
    from .sqlite_store import build_sqlite_backend
    return build_sqlite_backend(s.db_path)


def parse_bool(value: str | bool | None, default: bool = False) -> bool:
    if value is None: return default
    if isinstance(value, bool): return value
    return str(value).strip().lower() in ("true", "1", "yes")


__all__ = ["RolloutSettings", "build_backend", "configure_logging", "parse_bool", "LOG_FORMAT", "ENV_KEYS"]
