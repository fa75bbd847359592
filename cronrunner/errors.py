"""Exception taxonomy for cronrunner.

Only configuration and startup problems are raised. Per-run problems
(spawn failures, non-zero exits, timeouts) are reported as outcomes.
"""

from __future__ import annotations


class CronRunnerError(Exception):
    """Base error for cronrunner."""


class ConfigError(CronRunnerError):
    """Config validation error."""


class ScheduleError(ConfigError):
    """Schedule expression failed validation."""


class StartupError(CronRunnerError):
    """Fatal problem detected before scheduling starts."""


class CommandNotFoundError(StartupError):
    def __init__(self, command: str) -> None:
        super().__init__(f"Command not found: {command}")
        self.command = command
