"""Process-wide logger writing to a size-rotated log file."""

from __future__ import annotations

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_FILE = "./log/rec53.log"
MAX_BYTES = 1024 * 1024
BACKUP_COUNT = 5

logger = logging.getLogger("rec53")
logger.setLevel(logging.DEBUG)
logger.propagate = False

_file_handler: RotatingFileHandler | None = None


class _ConsoleFormatter(logging.Formatter):
    """Tab-separated lines with ISO 8601 timestamps and upper-case levels."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s\t%(levelname)s\t%(filename)s:%(lineno)d\t%(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone()
        return stamp.isoformat(timespec="milliseconds")


def init_logger(path: str | Path | None = None) -> logging.Logger:
    """Attach a rotating file handler (1 MiB, 5 backups) to the logger."""
    global _file_handler
    target = Path(path if path is not None else DEFAULT_LOG_FILE)
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        target, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    handler.setFormatter(_ConsoleFormatter())
    if _file_handler is not None:
        logger.removeHandler(_file_handler)
        _file_handler.close()
    logger.addHandler(handler)
    _file_handler = handler
    return logger


def set_log_level(level: int | str) -> None:
    """Change the logger's level; accepts a number or a level name."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level!r}")
        level = resolved
    logger.setLevel(level)


def get_log_level() -> int:
    """Return the logger's current level."""
    return logger.level