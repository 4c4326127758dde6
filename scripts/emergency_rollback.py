"""
Emergency rollback of the package migration.
Usage: emergency_rollback.py [immediate|graceful|complete|service] [reason] [force=false] [service=recommendations]
       emergency_rollback.py <scope> --dry-run    (print the step plan only)
"""

import sys
import json
import asyncio
import logging
from pathlib import Path

# Add project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from cutover.config import RolloutSettings, build_backend, configure_logging, parse_bool
from cutover.errors import RolloutError
from cutover.rollback import RollbackOrchestrator, RollbackTimings

logger = logging.getLogger("cutover.cli.rollback")


async def run(scope: str, reason: str, force: bool, service: str | None, dry_run: bool) -> bool:
    settings = RolloutSettings.from_env()
    timings = RollbackTimings(drain_interval=settings.drain_interval, session_wait=settings.session_wait,
                              lease_timeout=settings.lease_timeout)
    orchestrator = RollbackOrchestrator.from_backend(build_backend(settings), timings=timings)

    logger.critical(f"EMERGENCY ROLLBACK INITIATED: scope={scope}, reason={reason}, force={force}")
    result = await orchestrator.execute(scope, reason, force=force, service=service, dry_run=dry_run)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    if result.success:
        logger.info("Emergency rollback completed successfully")
    else:
        logger.critical(f"Emergency rollback failed ({', '.join(result.failed_steps)}) - manual intervention required")
    return result.success


def main() -> bool:
    dry_run = "--dry-run" in sys.argv
    args = [a for a in sys.argv[1:] if a != "--dry-run"]
    scope = args[0] if args else "service"
    reason = args[1] if len(args) > 1 else "manual_trigger"
    force = parse_bool(args[2] if len(args) > 2 else None)
    service = (args[3] if len(args) > 3 else "recommendations") if scope == "service" else None

    try:
        configure_logging(RolloutSettings.from_env().log_level)
        return asyncio.run(run(scope, reason, force, service, dry_run))
    except RolloutError as e:
        logger.error(str(e))
        if e.error_code == "CONFIGURATION_ERROR":
            logger.info("Available scopes: immediate, graceful, complete, service")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
