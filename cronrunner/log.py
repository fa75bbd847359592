"""Log sink: one timestamped line per record, on stdout and optionally a file."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, tzinfo
from typing import Optional

LOGGER_NAME = "cronrunner"
LINE_FORMAT = "[%(asctime)s] %(tag)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LEVEL_TAGS = {"WARNING": "WARN", "CRITICAL": "FATAL"}
STREAM_ATTR = "stream_tag"


class LineFormatter(logging.Formatter):
    """Formats ``[YYYY-MM-DD HH:MM:SS] TAG: message`` in a fixed timezone.

    ``TAG`` is the record's stream tag (``STDOUT``/``STDERR``) when the
    record carries one, else the level name.
    """

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        super().__init__(LINE_FORMAT, datefmt=DATE_FORMAT)
        self.tz = tz

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=self.tz) if self.tz else datetime.fromtimestamp(record.created)
        return stamp.strftime(datefmt or DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        stream_tag = getattr(record, STREAM_ATTR, None)
        record.tag = stream_tag or LEVEL_TAGS.get(record.levelname, record.levelname)
        return super().format(record)


def setup_logging(
    tz: Optional[tzinfo] = None,
    level: int = logging.INFO,
    log_file: Optional[str] = None,
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = LineFormatter(tz)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def stream_extra(tag: str) -> dict:
    return {STREAM_ATTR: tag}
