"""Recurring-job scheduler: run one external command on a cron schedule."""

__version__ = "0.1.0"
