#!/usr/bin/env python3
"""
Operator command line for the retention engine.

Usage:
    python retention_cli.py run        # apply retention once, print the report
    python retention_cli.py policy     # print the effective policies
    python retention_cli.py serve      # run the scheduler in the foreground
    python retention_cli.py migrate    # create/upgrade the retained tables
"""

import argparse
import asyncio
import json
import logging
import sys

from errors import ConfigError, OverlapSkipped, StorageError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STORAGE_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_SKIPPED = 3


def cmd_run(args) -> int:
    from retention_run import run_once

    try:
        report = run_once()
    except OverlapSkipped as e:
        logger.info("Retention run skipped: %s", e)
        return EXIT_SKIPPED
    except StorageError as e:
        logger.error("Retention run failed: %s", e)
        return EXIT_STORAGE_ERROR

    print(json.dumps(report.to_dict(), indent=2))
    return EXIT_OK


def cmd_policy(args) -> int:
    from retention_policy import get_policy_defaults

    print(json.dumps(get_policy_defaults(), indent=2))
    return EXIT_OK


async def _serve() -> None:
    from database import close_db_manager
    from retention_maintenance import RetentionScheduler
    from retention_policy import load_policies

    load_policies()
    scheduler = RetentionScheduler(enabled=True)
    await scheduler.start()
    try:
        # Runs until the process is interrupted.
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await scheduler.wait_for_idle()
        close_db_manager()


def cmd_serve(args) -> int:
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Retention scheduler interrupted by user")
    return EXIT_OK


def cmd_migrate(args) -> int:
    from migrate import run_migrations

    return EXIT_OK if run_migrations() else EXIT_STORAGE_ERROR


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Notification and integration log retention',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Apply retention now
  python retention_cli.py run

  # Show thresholds after environment overrides
  CLEANUP_MAX_LOGS=2000 python retention_cli.py policy
        """
    )
    parser.add_argument(
        '--log-level',
        default='info',
        choices=['debug', 'info', 'warning', 'error'],
        help='Logging level (default: info)'
    )

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('run', help='Apply all retention policies once').set_defaults(func=cmd_run)
    sub.add_parser('policy', help='Print effective retention policies').set_defaults(func=cmd_policy)
    sub.add_parser('serve', help='Run the retention scheduler in the foreground').set_defaults(func=cmd_serve)
    sub.add_parser('migrate', help='Apply database migrations').set_defaults(func=cmd_migrate)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except ConfigError as e:
        logger.error("Invalid retention configuration: %s", e)
        return EXIT_CONFIG_ERROR


if __name__ == '__main__':
    sys.exit(main())
