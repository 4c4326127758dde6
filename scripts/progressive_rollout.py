"""
Progressive rollout of one migration phase.
Usage: progressive_rollout.py [phase1|phase2|phase3|status] [percentage=10] [dry_run=false] [reason]

Ctrl-C / SIGTERM while a phase is live triggers its automatic rollback before exit.
"""

import sys
import json
import signal
import asyncio
import logging
from pathlib import Path

# Add project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from cutover.config import RolloutSettings, build_backend, configure_logging, parse_bool
from cutover.errors import ConfigurationError
from cutover.rollout import PhaseController

logger = logging.getLogger("cutover.cli.rollout")


async def run(phase: str, percentage: int, dry_run: bool, reason: str = "") -> bool:
    settings = RolloutSettings.from_env()
    controller = PhaseController.from_backend(build_backend(settings), settings)

    if phase == "status":
        print(await controller.generate_report())
        return True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, controller.interrupt)

    logger.info(f"Starting Progressive Migration: {phase} with {percentage}% traffic (dry run: {dry_run})")
    result = await controller.run_phase(phase, percentage, dry_run=dry_run, reason_on_failure=reason)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    if result.success:
        logger.info(f"Progressive Migration {phase} complete")
    else:
        logger.error(f"Progressive Migration {phase} failed: {result.reason}")
    return result.success


def main() -> bool:
    phase = sys.argv[1] if len(sys.argv) > 1 else "phase1"
    try:
        percentage = int(sys.argv[2]) if len(sys.argv) > 2 else 10
    except ValueError:
        print(f"Invalid percentage: {sys.argv[2]}", file=sys.stderr)
        return False
    dry_run = parse_bool(sys.argv[3] if len(sys.argv) > 3 else None)
    reason = sys.argv[4] if len(sys.argv) > 4 else ""

    try:
        configure_logging(RolloutSettings.from_env().log_level)
        return asyncio.run(run(phase, percentage, dry_run, reason))
    except ConfigurationError as e:
        logger.error(str(e))
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
