#!/usr/bin/env python3
"""
Maintenance Runner

Runs periodic TrialSync housekeeping from cron or a Kubernetes CronJob:

    run_maintenance.py migrate
    run_maintenance.py cleanup-sessions
    run_maintenance.py cleanup-trials [--retention-days N]

Requires DATABASE_URL in the environment.
"""

import argparse
import asyncio
import sys

from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_write_session_factory
from app.exceptions import TrialSyncError
from app.observability import get_logger, setup_logging
from app.services.device_sync import DeviceSyncService
from app.services.trial_quota import build_trial_quota_service

logger = get_logger(__name__)


async def cleanup_sessions() -> int:
    """Deactivate expired and inactive device sessions."""
    async with get_write_session_factory()() as session:
        return await DeviceSyncService(session, settings).cleanup_expired_sessions()


async def cleanup_trials(retention_days: int | None) -> int:
    """Purge unconverted trial records idle beyond the retention window."""
    service = build_trial_quota_service(get_write_session_factory(), settings)
    return await service.cleanup_expired_data(retention_days)


async def run(args: argparse.Namespace) -> int:
    try:
        if args.command == "cleanup-sessions":
            cleaned = await cleanup_sessions()
        else:
            cleaned = await cleanup_trials(getattr(args, "retention_days", None))
    finally:
        await close_engines()

    logger.info("maintenance_complete", command=args.command, cleaned=cleaned)
    return cleaned


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="TrialSync maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="Apply pending database migrations")
    sub.add_parser("cleanup-sessions", help="Deactivate expired and inactive sessions")
    trials = sub.add_parser("cleanup-trials", help="Purge idle unconverted trial records")
    trials.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args(argv)

    setup_logging()

    if args.command == "migrate":
        try:
            run_migrations()
        except RuntimeError as exc:
            logger.error("maintenance_failed", command=args.command, error=str(exc))
            return 1
        return 0

    if getattr(args, "retention_days", None) is not None and args.retention_days <= 0:
        parser.error("--retention-days must be positive")

    try:
        asyncio.run(run(args))
    except TrialSyncError as exc:
        logger.error("maintenance_failed", command=args.command, error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
