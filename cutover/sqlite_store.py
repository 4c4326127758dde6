"""SQLite backend for the rollout controller.

Tables:
  feature_flags, migration_checkpoints, rollback_events, rollback_leases, emergency_alerts  (owned)
  request_logs, error_logs, performance_metrics, performance_baselines, user_actions         (telemetry, read-only)
  cache_entries, active_sessions, service_state_backups, system_config, data_backups         (platform)
"""
from __future__ import annotations
import asyncio, json, logging, sqlite3, time, uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import FlagUpdateError, MetricsUnavailableError
from .models import (AlertSeverity, Checkpoint, CheckpointStatus, FeatureFlag, RollbackEvent, RollbackScope,
                     RollbackStatus, check_percentage, utcnow)
from .stores import Backend

logger = logging.getLogger("cutover.sqlite")

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS feature_flags (
    name TEXT PRIMARY KEY, enabled INTEGER NOT NULL DEFAULT 0,
    rollout_percentage INTEGER NOT NULL DEFAULT 0 CHECK (rollout_percentage BETWEEN 0 AND 100),
    updated_at TEXT, updated_by TEXT
);
CREATE TABLE IF NOT EXISTS migration_checkpoints (
    id TEXT PRIMARY KEY, phase TEXT NOT NULL, milestone TEXT NOT NULL, status TEXT NOT NULL,
    metrics TEXT NOT NULL DEFAULT '{}', timestamp TEXT NOT NULL, seq INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_phase ON migration_checkpoints (phase, status, seq);
CREATE TABLE IF NOT EXISTS rollback_events (
    id TEXT PRIMARY KEY, scope TEXT NOT NULL, reason TEXT, force INTEGER NOT NULL DEFAULT 0, service TEXT,
    status TEXT NOT NULL, initiated_at TEXT NOT NULL, completed_at TEXT, failed_steps TEXT NOT NULL DEFAULT '[]',
    duration_ms REAL NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS rollback_leases (key TEXT PRIMARY KEY, holder TEXT NOT NULL, expires_at REAL NOT NULL);
CREATE TABLE IF NOT EXISTS emergency_alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT, severity TEXT NOT NULL, message TEXT NOT NULL, context TEXT,
    source TEXT, timestamp TEXT NOT NULL, acknowledged INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS request_logs (id INTEGER PRIMARY KEY AUTOINCREMENT, ts REAL NOT NULL);
CREATE TABLE IF NOT EXISTS error_logs (id INTEGER PRIMARY KEY AUTOINCREMENT, ts REAL NOT NULL, message TEXT);
CREATE TABLE IF NOT EXISTS performance_metrics (id INTEGER PRIMARY KEY AUTOINCREMENT, ts REAL NOT NULL, latency REAL);
CREATE TABLE IF NOT EXISTS performance_baselines (id INTEGER PRIMARY KEY AUTOINCREMENT, ts REAL NOT NULL, p50 REAL);
CREATE TABLE IF NOT EXISTS user_actions (id INTEGER PRIMARY KEY AUTOINCREMENT, ts REAL NOT NULL, success INTEGER NOT NULL);
CREATE TABLE IF NOT EXISTS cache_entries (key TEXT PRIMARY KEY, source TEXT NOT NULL, value TEXT);
CREATE TABLE IF NOT EXISTS active_sessions (id TEXT PRIMARY KEY, last_activity REAL NOT NULL);
CREATE TABLE IF NOT EXISTS service_state_backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT, service TEXT NOT NULL, state TEXT NOT NULL, ts REAL NOT NULL,
    restored_at REAL
);
CREATE TABLE IF NOT EXISTS system_config (key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at TEXT);
CREATE TABLE IF NOT EXISTS data_backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT, collection TEXT NOT NULL, payload TEXT NOT NULL, ts REAL NOT NULL,
    restored_at REAL
);
"""

INTEGRITY_TABLES = ("feature_flags", "migration_checkpoints", "request_logs", "user_actions")


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteDatabase:
    """Connection factory with the pragmas and schema the stores rely on."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connect(self):
        conn = None
        try:
            conn = sqlite3.connect(self.path, timeout=10.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error ({self.path}): {e}")
            raise
        finally:
            if conn:
                conn.close()

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def execute(self, sql: str, params: tuple = ()) -> int:
        with self.connect() as conn:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount

    # Async entry points used by the stores; blocking sqlite work runs on a worker thread.
    async def run(self, fn: Callable[..., T], *args) -> T:
        return await asyncio.to_thread(fn, *args)

    async def fetch(self, sql: str, params: tuple = ()) -> list[dict]:
        return await self.run(self.query, sql, params)

    async def write(self, sql: str, params: tuple = ()) -> int:
        return await self.run(self.execute, sql, params)


class SqliteFlagStore:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    @staticmethod
    def _row(r: dict) -> FeatureFlag:
        return FeatureFlag(r["name"], bool(r["enabled"]), r["rollout_percentage"], _dt(r["updated_at"]), r["updated_by"] or "")

    async def get_flag(self, name: str) -> FeatureFlag | None:
        rows = await self.db.fetch("SELECT * FROM feature_flags WHERE name = ?", (name,))
        return self._row(rows[0]) if rows else None

    async def update_flag(self, name: str, enabled: bool, percentage: int, actor: str) -> FeatureFlag:
        try:
            check_percentage(percentage)
            now = utcnow()
            await self.db.write(
                """INSERT INTO feature_flags (name, enabled, rollout_percentage, updated_at, updated_by)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled,
                       rollout_percentage = excluded.rollout_percentage,
                       updated_at = excluded.updated_at, updated_by = excluded.updated_by""",
                (name, int(bool(enabled)), percentage, _iso(now), actor))
        except (sqlite3.Error, ValueError) as e:
            raise FlagUpdateError(f"failed to update feature flag {name}: {e}", flag=name) from e
        return FeatureFlag(name, bool(enabled), percentage, now, actor)

    async def list_flags(self) -> list[FeatureFlag]:
        return [self._row(r) for r in await self.db.fetch("SELECT * FROM feature_flags ORDER BY name")]


class SqliteCheckpointStore:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    @staticmethod
    def _row(r: dict) -> Checkpoint:
        return Checkpoint(r["id"], r["phase"], r["milestone"], CheckpointStatus(r["status"]),
                          json.loads(r["metrics"] or "{}"), _dt(r["timestamp"]))

    def _insert(self, cid: str, phase_id: str, milestone: str, status: str, metrics: dict[str, Any]) -> None:
        with self.db.connect() as conn:
            seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM migration_checkpoints").fetchone()[0]
            conn.execute("INSERT INTO migration_checkpoints (id, phase, milestone, status, metrics, timestamp, seq) "
                         "VALUES (?, ?, ?, ?, ?, ?, ?)",
                         (cid, phase_id, milestone, status, json.dumps(metrics, default=str), _iso(utcnow()), seq))
            conn.commit()

    async def create_checkpoint(self, phase_id: str, milestone: str, metrics: dict[str, Any],
                                status: str = "completed") -> str:
        cid = uuid.uuid4().hex
        CheckpointStatus(status)
        await self.db.run(self._insert, cid, phase_id, milestone, status, metrics)
        return cid

    async def latest_completed(self, phase_id: str) -> Checkpoint | None:
        rows = await self.db.fetch("SELECT * FROM migration_checkpoints WHERE phase = ? AND status = 'completed' "
                                   "ORDER BY seq DESC LIMIT 1", (phase_id,))
        return self._row(rows[0]) if rows else None

    async def list_checkpoints(self, phase_id: str | None = None) -> list[Checkpoint]:
        if phase_id is None:
            rows = await self.db.fetch("SELECT * FROM migration_checkpoints ORDER BY seq")
        else:
            rows = await self.db.fetch("SELECT * FROM migration_checkpoints WHERE phase = ? ORDER BY seq", (phase_id,))
        return [self._row(r) for r in rows]

    async def clear_all(self) -> None:
        n = await self.db.write("DELETE FROM migration_checkpoints")
        logger.info(f"Migration checkpoints cleared ({n})")


class SqliteRollbackLog:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    async def record(self, event: RollbackEvent) -> str:
        event.event_id = event.event_id or uuid.uuid4().hex
        await self.db.write("INSERT INTO rollback_events (id, scope, reason, force, service, status, initiated_at, "
                            "completed_at, failed_steps) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            (event.event_id, event.scope.value, event.reason, int(event.force), event.service,
                             event.status.value, _iso(event.initiated_at), _iso(event.completed_at),
                             json.dumps(event.failed_steps)))
        return event.event_id

    async def update(self, event: RollbackEvent) -> None:
        await self.db.write("UPDATE rollback_events SET status = ?, completed_at = ?, failed_steps = ?, duration_ms = ? "
                            "WHERE id = ?", (event.status.value, _iso(event.completed_at), json.dumps(event.failed_steps),
                                             event.duration_ms, event.event_id))

    async def list_events(self, limit: int = 20) -> list[RollbackEvent]:
        rows = await self.db.fetch("SELECT * FROM rollback_events ORDER BY initiated_at DESC LIMIT ?", (limit,))
        return [RollbackEvent(RollbackScope(r["scope"]), r["reason"] or "", bool(r["force"]), r["service"],
                              _dt(r["initiated_at"]), RollbackStatus(r["status"]), r["id"],
                              json.loads(r["failed_steps"] or "[]"), _dt(r["completed_at"]), r["duration_ms"] or 0.0)
                for r in rows]


class SqliteLeaseStore:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    def _acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        now = time.time()
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT holder, expires_at FROM rollback_leases WHERE key = ?", (key,)).fetchone()
            if row and row["holder"] != holder and row["expires_at"] > now:
                conn.rollback()
                return False
            conn.execute("INSERT OR REPLACE INTO rollback_leases (key, holder, expires_at) VALUES (?, ?, ?)",
                         (key, holder, now + ttl_seconds))
            conn.commit()
        return True

    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        return await self.db.run(self._acquire, key, holder, ttl_seconds)

    async def release(self, key: str, holder: str) -> None:
        await self.db.write("DELETE FROM rollback_leases WHERE key = ? AND holder = ?", (key, holder))


class SqliteAlertSink:
    def __init__(self, db: SqliteDatabase, source: str = "cutover"):
        self.db = db; self.source = source

    async def send(self, severity: AlertSeverity, message: str, context: dict[str, Any]) -> None:
        logger.log(logging.CRITICAL if severity == AlertSeverity.CRITICAL else logging.WARNING,
                   f"EMERGENCY ALERT [{severity.value}]: {message}")
        await self.db.write("INSERT INTO emergency_alerts (severity, message, context, source, timestamp) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (severity.value, message, json.dumps(context, default=str), self.source, _iso(utcnow())))


class SqliteMetricsSource:
    """Telemetry from the request/error/performance/user-action tables. Raises when no data."""

    def __init__(self, db: SqliteDatabase):
        self.db = db

    async def _count(self, sql: str, params: tuple) -> int:
        return (await self.db.fetch(sql, params))[0]["n"]

    async def error_rate(self, window_seconds: int) -> float:
        since = time.time() - window_seconds
        requests = await self._count("SELECT COUNT(*) AS n FROM request_logs WHERE ts >= ?", (since,))
        errors = await self._count("SELECT COUNT(*) AS n FROM error_logs WHERE ts >= ?", (since,))
        return min(errors / max(requests, 1), 1.0)

    async def latency_ms(self, window_seconds: int) -> float:
        rows = await self.db.fetch("SELECT latency FROM performance_metrics WHERE ts >= ? AND latency IS NOT NULL "
                                   "ORDER BY ts DESC LIMIT 10", (time.time() - window_seconds,))
        if not rows: raise MetricsUnavailableError("no performance metrics in window")
        return sum(r["latency"] for r in rows) / len(rows)

    async def baseline_latency_ms(self) -> float:
        rows = await self.db.fetch("SELECT p50 FROM performance_baselines WHERE p50 IS NOT NULL ORDER BY ts DESC LIMIT 1")
        if not rows: raise MetricsUnavailableError("no performance baseline recorded")
        return float(rows[0]["p50"])

    async def user_success_rate(self, window_seconds: int) -> float:
        rows = await self.db.fetch("SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS ok FROM user_actions "
                                   "WHERE ts >= ?", (time.time() - window_seconds,))
        if not rows[0]["total"]: raise MetricsUnavailableError("no user actions in window")
        return rows[0]["ok"] / rows[0]["total"]

    async def data_integrity_ok(self) -> bool:
        try:
            for table in INTEGRITY_TABLES:
                await self.db.fetch(f"SELECT 1 FROM {table} LIMIT 1")
        except sqlite3.Error as e:
            logger.error(f"Data integrity check failed: {e}")
            return False
        return True


class SqlitePlatform:
    def __init__(self, db: SqliteDatabase):
        self.db = db

    async def clear_package_cache(self) -> int:
        n = await self.db.write("DELETE FROM cache_entries WHERE source = 'package'")
        logger.info(f"Package cache cleared ({n} entries)")
        return n

    async def active_sessions(self) -> int:
        rows = await self.db.fetch("SELECT COUNT(*) AS n FROM active_sessions WHERE last_activity >= ?",
                                   (time.time() - 300,))
        return rows[0]["n"]

    def _preserve(self, service: str) -> str:
        state = {row["key"]: row["value"] for row in
                 self.db.query("SELECT key, value FROM system_config WHERE key LIKE ?", (f"{service}%",))}
        with self.db.connect() as conn:
            cur = conn.execute("INSERT INTO service_state_backups (service, state, ts) VALUES (?, ?, ?)",
                               (service, json.dumps(state), time.time()))
            conn.commit()
            return str(cur.lastrowid)

    async def preserve_service_state(self, service: str) -> str:
        backup_id = await self.db.run(self._preserve, service)
        logger.info(f"Service state preserved for {service}: backup {backup_id}")
        return backup_id

    def _restore(self, service: str | None) -> dict | None:
        sql = "SELECT * FROM service_state_backups" + (" WHERE service = ?" if service else "") + " ORDER BY ts DESC, id DESC LIMIT 1"
        rows = self.db.query(sql, (service,) if service else ())
        if not rows: return None
        backup = rows[0]
        with self.db.connect() as conn:
            for key, value in json.loads(backup["state"]).items():
                conn.execute("INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES (?, ?, ?)",
                             (key, value, _iso(utcnow())))
            conn.execute("UPDATE service_state_backups SET restored_at = ? WHERE id = ?", (time.time(), backup["id"]))
            conn.commit()
        return backup

    async def restore_service_state(self, service: str | None = None) -> bool:
        backup = await self.db.run(self._restore, service)
        if backup is None: return False
        logger.info(f"Service state restored for {backup['service']} from backup {backup['id']}")
        return True

    def _stop(self, names: list[str]) -> None:
        with self.db.connect() as conn:
            for name in names:
                conn.execute("INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES (?, 'stopped', ?)",
                             (f"{name}.package_service", _iso(utcnow())))
            conn.commit()

    async def stop_services(self, names: list[str]) -> None:
        await self.db.run(self._stop, names)
        logger.info(f"Stopped package services: {', '.join(names)}")

    async def restore_all_data(self) -> None:
        """Mark pending data backups as restored.

        Only stamps ``restored_at`` on unrestored ``data_backups`` rows. Backup payloads are not applied.
        """
        rows = await self.db.fetch("SELECT DISTINCT collection FROM data_backups WHERE restored_at IS NULL")
        if rows:
            await self.db.write("UPDATE data_backups SET restored_at = ? WHERE restored_at IS NULL", (time.time(),))
        logger.info(f"Data backups marked restored ({len(rows)} collections)")

    def _legacy_config(self) -> None:
        with self.db.connect() as conn:
            conn.execute("INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES ('routing.mode', 'legacy', ?)",
                         (_iso(utcnow()),))
            conn.execute("DELETE FROM system_config WHERE key = 'cache_migration.dual_write'")
            conn.commit()

    async def restore_legacy_config(self) -> None:
        await self.db.run(self._legacy_config)
        logger.info("Legacy configurations restored")

    async def enable_dual_write_cache(self) -> None:
        await self.db.write("INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES "
                            "('cache_migration.dual_write', 'true', ?)", (_iso(utcnow()),))
        logger.info("Dual-write cache enabled (read preference: legacy)")


def build_sqlite_backend(path: str | Path) -> Backend:
    db = SqliteDatabase(path)
    return Backend(flags=SqliteFlagStore(db), metrics=SqliteMetricsSource(db), checkpoints=SqliteCheckpointStore(db),
                   alerts=SqliteAlertSink(db), leases=SqliteLeaseStore(db), rollback_log=SqliteRollbackLog(db),
                   platform=SqlitePlatform(db), name="sqlite")


__all__ = ["SqliteDatabase", "SqliteFlagStore", "SqliteCheckpointStore", "SqliteRollbackLog", "SqliteLeaseStore",
           "SqliteAlertSink", "SqliteMetricsSource", "SqlitePlatform", "build_sqlite_backend", "SCHEMA"]
