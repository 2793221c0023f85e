#!/usr/bin/env python3
"""Command line entry point for hostbackup.

Commands:
    run       Run one backup now (default)
    schedule  Run backups on a cron schedule, each in its own process
    check     Show resolved settings and prerequisite status

Usage:
    # One run, settings from the environment and ./.env
    hostbackup run

    # Settings from a specific env file
    hostbackup --env-file /etc/hostbackup.env run

    # Catch-up run dated yesterday (affects file names and snapshot days)
    hostbackup run --date 2024-03-31

    # Long-running scheduler (default schedule: HOSTBACKUP_SCHEDULE or 0 2 * * *)
    hostbackup schedule --cron "30 1 * * *"

Exit codes:
    0  backup completed with no errors
    1  fatal error, or completed with errors
"""

import argparse
import signal
import subprocess
import sys
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from hostbackup.backup.context import RunContext
from hostbackup.backup.controller import build_controller
from hostbackup.backup.housekeeping import check_prerequisites
from hostbackup.config import BackupSettings
from hostbackup.exceptions import ConfigurationError
from hostbackup.logger import DefaultLogger, Logger, create_logger


def run_date(value: str) -> date:
    """--date argument: an ISO date no later than today"""
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from None
    if parsed > date.today():
        # Retention ages are measured from the run date
        raise argparse.ArgumentTypeError(f"run date {value} is in the future")
    return parsed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="hostbackup",
        description="Host-level backup to the site NAS",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Settings file in .env format (default: ./.env when present)",
    )

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run one backup now")
    run.add_argument(
        "--date",
        type=run_date,
        default=None,
        help="Run date as YYYY-MM-DD (default: today)",
    )
    run.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Databases dumped concurrently (default: HOSTBACKUP_DUMP_WORKERS or 1)",
    )

    schedule = subparsers.add_parser("schedule", help="Run backups on a cron schedule")
    schedule.add_argument(
        "--cron",
        type=str,
        default=None,
        help="Cron expression 'minute hour day month weekday' "
             "(weekday as names, e.g. sun; default: HOSTBACKUP_SCHEDULE)",
    )

    subparsers.add_parser("check", help="Show settings and prerequisite status")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.date = None
        args.max_workers = None
    return args


def load_settings(args: argparse.Namespace) -> BackupSettings:
    overrides = {}
    if getattr(args, "max_workers", None):
        overrides["HOSTBACKUP_DUMP_WORKERS"] = str(args.max_workers)
    if getattr(args, "cron", None):
        overrides["HOSTBACKUP_SCHEDULE"] = args.cron
    return BackupSettings.from_env(env_file=args.env_file, overrides=overrides)


def run_logger() -> Logger:
    """Console logger; a run attaches its log files once it holds the run lock"""
    return create_logger(name="hostbackup", log_file="", error_log_file="")


def cmd_run(args: argparse.Namespace, settings: BackupSettings) -> int:
    """Run one backup and return its exit code"""
    now = None
    if args.date:
        now = datetime.combine(args.date, datetime.now().time())

    logger = run_logger()
    context = RunContext.from_settings(settings, now=now)
    outcome = build_controller(settings, context, logger).run()
    return outcome.exit_code


def cmd_schedule(args: argparse.Namespace, settings: BackupSettings) -> int:
    """Launch 'hostbackup run' on the configured schedule

    Each run is a separate process, so each has its own context, lock and
    exit code; an overlapping run is refused by the run lock.
    """
    logger = run_logger()
    command = [sys.executable, "-m", "hostbackup"]
    if args.env_file:
        command.extend(["--env-file", str(args.env_file)])
    command.append("run")

    def launch() -> None:
        logger.info("Launching scheduled backup run")
        result = subprocess.run(command, check=False)
        logger.info(f"Scheduled backup run exited with status {result.returncode}")

    minute, hour, day, month, day_of_week = settings.schedule.split()
    trigger = CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
    )

    scheduler = BlockingScheduler()
    scheduler.add_job(
        launch,
        trigger=trigger,
        id="backup_run",
        name="Scheduled backup",
        misfire_grace_time=3600,  # Allow 1 hour grace period
        coalesce=True,
        max_instances=1,
    )

    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping scheduler")
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    logger.info(f"Backup scheduled: {settings.schedule}")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        pass
    logger.info("Scheduler stopped")
    return 0


def cmd_check(args: argparse.Namespace, settings: BackupSettings) -> int:
    """Print resolved settings and prerequisite warnings; touches nothing"""
    print(settings.model_dump_json(indent=2))
    warnings = check_prerequisites(DefaultLogger(output=sys.stderr), packages=())
    print(f"\n{len(warnings)} prerequisite warning(s)")
    return 0


COMMANDS = {
    "run": cmd_run,
    "schedule": cmd_schedule,
    "check": cmd_check,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    return COMMANDS[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
