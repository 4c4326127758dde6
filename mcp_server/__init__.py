"""Cutover MCP Server Package.

Provides rollout and rollback operations for the progressive cutover controller.
Server: cutover-ops
Tools: 6 total

Tool Categories:
  - Rollout (2): run_phase, get_rollout_status
  - Rollback (2): execute_rollback, get_rollback_history
  - State (2): get_feature_flags, get_checkpoints

Operational Note:
  run_phase blocks for the full monitoring window (CUTOVER_MAX_MONITOR_DURATION, default 30 min).
  Use dry_run=True to preview decisions without touching flags.
"""
__version__ = "1.0.0"
__server_name__ = "cutover-ops"
