"""Command line entry point: ``cronrunner <schedule> <command> [args...]``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import Settings, load_settings
from .errors import CommandNotFoundError, ConfigError, CronRunnerError, ScheduleError
from .log import setup_logging
from .schedule import validate
from .supervisor import prepare

logger = logging.getLogger("cronrunner")

USAGE_EXIT_CODE = 1


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit code 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(USAGE_EXIT_CODE, f"{self.prog}: error: {message}\n")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = UsageParser(
        prog="cronrunner",
        description="Run a command on a cron schedule with a per-run timeout.",
        epilog=(
            "environment: CRON_WITH_SECONDS, CRON_TIMEOUT, TZ, CRON_MAX_LINE_BYTES, "
            "CRON_LOG_LEVEL, CRON_LOG_FILE, CRON_CONFIG"
        ),
    )
    parser.add_argument("--config", help="YAML settings file (environment variables take precedence)")
    parser.add_argument(
        "--preview",
        type=int,
        metavar="N",
        help="Print the next N fire times and exit without running the command",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("schedule", help='Cron expression, descriptor ("@daily"), "@every 30m" or "@once"')
    parser.add_argument("command", nargs="?", help="Command to run, looked up on PATH")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the command")
    namespace = parser.parse_args(argv)
    if namespace.command is None and namespace.preview is None:
        parser.error("the following arguments are required: command")
    return namespace


def command_preview(expression: str, count: int, settings: Settings) -> int:
    schedule = validate(expression, settings.with_seconds)
    print(f"Schedule: {schedule.describe()} ({settings.timezone_name})")
    for fire_at in schedule.next_fires(count, settings.timezone):
        print(f"- {fire_at.isoformat()}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.preview is not None and args.preview <= 0:
        print("cronrunner: error: --preview must be >= 1", file=sys.stderr)
        return USAGE_EXIT_CODE

    try:
        settings = load_settings(config_path=Path(args.config) if args.config else None)
    except ConfigError as exc:
        setup_logging()
        logger.error(str(exc))
        return 1

    setup_logging(settings.timezone, settings.log_level, settings.log_file)
    for warning in settings.warnings:
        logger.warning(warning)

    try:
        if args.preview is not None:
            return command_preview(args.schedule, args.preview, settings)
        supervisor = prepare(args.schedule, args.command, args.args, settings)
        return supervisor.run()
    except ScheduleError as exc:
        logger.error("Invalid schedule format: %s", exc)
        return 1
    except CommandNotFoundError as exc:
        logger.error(str(exc))
        return 1
    except CronRunnerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
