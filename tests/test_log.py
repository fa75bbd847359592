from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from cronrunner.log import LOGGER_NAME, LineFormatter, setup_logging, stream_extra


def _record(level: int, message: str, created: datetime, **extra) -> logging.LogRecord:
    record = logging.LogRecord("cronrunner", level, __file__, 1, message, None, None)
    record.created = created.timestamp()
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_level_lines() -> None:
    formatter = LineFormatter(timezone.utc)
    created = datetime(2026, 3, 1, 8, 30, 5, tzinfo=timezone.utc)
    assert formatter.format(_record(logging.INFO, "Command: /bin/echo hi", created)) == (
        "[2026-03-01 08:30:05] INFO: Command: /bin/echo hi"
    )
    assert formatter.format(_record(logging.WARNING, "careful", created)) == "[2026-03-01 08:30:05] WARN: careful"
    assert formatter.format(_record(logging.ERROR, "boom", created)) == "[2026-03-01 08:30:05] ERROR: boom"


def test_stream_lines_use_stream_tag() -> None:
    formatter = LineFormatter(timezone.utc)
    created = datetime(2026, 3, 1, 8, 30, 5, tzinfo=timezone.utc)
    record = _record(logging.INFO, "partial output", created, **stream_extra("STDERR"))
    assert formatter.format(record) == "[2026-03-01 08:30:05] STDERR: partial output"


def test_timestamps_follow_configured_zone() -> None:
    formatter = LineFormatter(ZoneInfo("Asia/Tokyo"))
    created = datetime(2026, 3, 1, 23, 0, 0, tzinfo=timezone.utc)
    assert formatter.format(_record(logging.INFO, "x", created)).startswith("[2026-03-02 08:00:00]")


@pytest.fixture
def bare_logger():
    logger = logging.getLogger(LOGGER_NAME)
    saved_handlers, saved_level = logger.handlers[:], logger.level
    logger.handlers.clear()
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved_handlers
    logger.setLevel(saved_level)


def test_log_file_receives_the_same_lines(tmp_path: Path, bare_logger: logging.Logger) -> None:
    log_file = tmp_path / "cronrunner.log"
    setup_logging(timezone.utc, logging.INFO, str(log_file))
    assert len(bare_logger.handlers) == 2

    bare_logger.info("Command finished successfully")
    bare_logger.getChild("executor").info("hello", extra=stream_extra("STDOUT"))
    bare_logger.debug("Next run at 2026-01-01T00:00:00+00:00")
    for handler in bare_logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("] INFO: Command finished successfully")
    assert lines[1].endswith("] STDOUT: hello")
