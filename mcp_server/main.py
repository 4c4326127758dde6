"""Cutover Operations MCP Server.

Exposes the progressive rollout controller and the emergency rollback orchestrator as MCP tools.
Server Name: cutover-ops
Tool Naming Convention: mcp__cutover-ops__<tool-name>

Tools (6 total):
  Rollout (2): run_phase, get_rollout_status
  Rollback (2): execute_rollback, get_rollback_history
  State (2): get_feature_flags, get_checkpoints

Backend is selected by CUTOVER_BACKEND (sqlite | memory); the sqlite file lives at CUTOVER_DB_PATH.
"""
import os
import sys
import logging
from datetime import datetime

from cutover.config import LOG_FORMAT, RolloutSettings, build_backend
from cutover.errors import RolloutError
from cutover.models import RollbackScope
from cutover.monitoring import HealthMonitor
from cutover.rollback import RollbackOrchestrator, RollbackTimings
from cutover.rollout import PhaseController

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format=LOG_FORMAT,
    stream=sys.stderr
)
logger = logging.getLogger("cutover-mcp")

# Verify MCP SDK installation
try:
    from mcp.server.fastmcp import FastMCP
except ImportError as e:
    logger.error("MCP SDK not installed. Run: pip install mcp")
    logger.error(f"Import error: {e}")
    sys.exit(1)

# Initialize MCP server
mcp = FastMCP("cutover-ops")

_state: dict = {}


# ============================================================
# BACKEND RESOLUTION
# ============================================================

def configure(backend=None, settings: RolloutSettings = None) -> None:
    """Bind the server to a backend; resolved lazily from the environment when omitted."""
    _state.clear()
    if settings is not None:
        _state["settings"] = settings
    if backend is not None:
        _state["backend"] = backend


def get_settings() -> RolloutSettings:
    if "settings" not in _state:
        _state["settings"] = RolloutSettings.from_env()
    return _state["settings"]


def get_backend():
    if "backend" not in _state:
        _state["backend"] = build_backend(get_settings())
        logger.info(f"Backend: {_state['backend'].name}")
    return _state["backend"]


def get_controller() -> PhaseController:
    if "controller" not in _state:
        s = get_settings()
        timings = RollbackTimings(drain_interval=s.drain_interval, session_wait=s.session_wait,
                                  lease_timeout=s.lease_timeout)
        orchestrator = RollbackOrchestrator.from_backend(get_backend(), timings=timings)
        _state["orchestrator"] = orchestrator
        _state["controller"] = PhaseController.from_backend(get_backend(), s, orchestrator=orchestrator)
    return _state["controller"]


def get_orchestrator() -> RollbackOrchestrator:
    get_controller()
    return _state["orchestrator"]


def error_response(e: Exception, **extra) -> dict:
    """Uniform failure payload."""
    if isinstance(e, RolloutError):
        return {"success": False, "error": e.message, "error_code": e.error_code, "details": e.details, **extra}
    return {"success": False, "error": str(e), "error_code": "INTERNAL_ERROR", **extra}


# ============================================================
# ROLLOUT TOOLS
# ============================================================

@mcp.tool()
async def run_phase(phase_id: str, target_percentage: int = 10, dry_run: bool = False, reason_on_failure: str = "") -> dict:
    """Runs one rollout phase: gate, ramp flags, monitor, then checkpoint or roll back.

    MCP Name: mcp__cutover-ops__run_phase

    Args:
        phase_id: phase1, phase2 or phase3
        target_percentage: Traffic percentage for the phase's flags (0-100)
        dry_run: Evaluate and log without mutating flags, checkpoints or rollback state
        reason_on_failure: Appended to the automatic rollback reason

    Returns:
        {
            "success": bool,
            "reason": "monitoring_window_elapsed" | breach reason | "predecessor phase incomplete" | ...,
            "checkpoint_id": str | None,
            "phase": {...} | None,
            "error": {...} | None,
            "rollback": {...} | None
        }
    """
    logger.info(f"run_phase: phase_id={phase_id}, target_percentage={target_percentage}, dry_run={dry_run}")
    try:
        result = await get_controller().run_phase(phase_id, target_percentage, dry_run, reason_on_failure)
    except Exception as e:
        logger.error(f"run_phase error: {e}")
        return error_response(e, phase_id=phase_id)
    response = result.to_dict()
    if result.error is not None:
        response["error_code"] = result.error.error_code
    return response


@mcp.tool()
async def get_rollout_status() -> dict:
    """Returns the active phase, the phase plan and per-phase completion.

    MCP Name: mcp__cutover-ops__get_rollout_status
    """
    try:
        controller = get_controller()
        verdict = await HealthMonitor(controller.metrics, controller.thresholds).evaluate_once()
        health = {"verdict": verdict.kind.value, "reason": verdict.reason,
                  "sample": verdict.sample.as_dict() if verdict.sample else None}
        return {"success": True, **controller.status(), "completed": await controller.progress(), "health": health,
                "report": await controller.generate_report(), "fetched_at": datetime.now().isoformat()}
    except Exception as e:
        logger.error(f"get_rollout_status error: {e}")
        return error_response(e)


# ============================================================
# ROLLBACK TOOLS
# ============================================================

@mcp.tool()
async def execute_rollback(scope: str = "service", reason: str = "manual_trigger", force: bool = False, service: str = None,
                           dry_run: bool = False) -> dict:
    """Executes an emergency rollback.

    MCP Name: mcp__cutover-ops__execute_rollback

    Args:
        scope: immediate | graceful | complete | service
        reason: Recorded on the rollback event and alerts
        force: Keep going past failing steps (failures are still recorded)
        service: Required for scope=service (recommendations, circuit-breaker, cache, ...)
        dry_run: Return the step plan without executing it

    Returns:
        {"success": bool, "scope": str, "steps": [...], "failed_steps": [...], "event": {...}, "error": {...}}
        On rejection: {"success": False, "error": str, "error_code": "ROLLBACK_IN_PROGRESS" | "CONFIGURATION_ERROR"}
    """
    logger.warning(f"execute_rollback: scope={scope}, service={service}, force={force}, dry_run={dry_run}")
    valid = [s.value for s in RollbackScope]
    if scope not in valid:
        return {"success": False, "error": f"Invalid scope '{scope}'. Valid values: {', '.join(valid)}",
                "error_code": "CONFIGURATION_ERROR"}
    try:
        result = await get_orchestrator().execute(scope, reason, force=force, service=service, dry_run=dry_run)
    except Exception as e:
        logger.error(f"execute_rollback error: {e}")
        return error_response(e, scope=scope)
    response = result.to_dict()
    if result.error is not None:
        response["error_code"] = result.error.error_code
    return response


@mcp.tool()
async def get_rollback_history(limit: int = 20) -> dict:
    """Returns recent rollback events, newest first.

    MCP Name: mcp__cutover-ops__get_rollback_history
    """
    limit = max(1, min(int(limit), 200))
    try:
        events = await get_backend().rollback_log.list_events(limit)
        return {"success": True, "events": [e.to_dict() for e in events], "count": len(events), "limit": limit}
    except Exception as e:
        logger.error(f"get_rollback_history error: {e}")
        return error_response(e, events=[])


# ============================================================
# STATE TOOLS
# ============================================================

@mcp.tool()
async def get_feature_flags(name: str = None) -> dict:
    """Returns one feature flag, or all of them.

    MCP Name: mcp__cutover-ops__get_feature_flags
    """
    try:
        flags = get_backend().flags
        if name:
            flag = await flags.get_flag(name)
            if flag is None:
                return {"success": False, "error": f"Feature flag not found: {name}", "error_code": "NOT_FOUND"}
            return {"success": True, "flags": [flag.to_dict()], "count": 1}
        items = [f.to_dict() for f in await flags.list_flags()]
        return {"success": True, "flags": items, "count": len(items)}
    except Exception as e:
        logger.error(f"get_feature_flags error: {e}")
        return error_response(e, flags=[])


@mcp.tool()
async def get_checkpoints(phase_id: str = None) -> dict:
    """Returns migration checkpoints, optionally for a single phase.

    MCP Name: mcp__cutover-ops__get_checkpoints
    """
    try:
        items = [c.to_dict() for c in await get_backend().checkpoints.list_checkpoints(phase_id)]
        return {"success": True, "checkpoints": items, "count": len(items), "phase_id": phase_id}
    except Exception as e:
        logger.error(f"get_checkpoints error: {e}")
        return error_response(e, checkpoints=[])


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    settings = get_settings()
    logger.info("=" * 60)
    logger.info("Starting Cutover MCP Server")
    logger.info(f"  Server Name: cutover-ops")
    logger.info(f"  Backend: {settings.backend}")
    logger.info(f"  Database: {settings.db_path}")
    logger.info("=" * 60)
    mcp.run()
