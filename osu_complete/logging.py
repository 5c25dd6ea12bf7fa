"""Logging configuration using Loguru.

Modules log through the standard library (``logging.getLogger(__name__)``);
``setup_logging`` routes those records into loguru, which writes a colored
console stream and a rotating log file per day under ``settings.log_dir``.

Pipelines mark outcomes with the status tags below. The tags carry ANSI
colors for the console; the file sink writes the same message with the
colors stripped so the daily logs stay greppable.

Example:
    >>> import logging
    >>> from osu_complete.logging import SUCCESS, WARN, setup_logging
    >>> setup_logging()                   # level and directory from settings
    >>> log = logging.getLogger(__name__)
    >>> log.info(f"{SUCCESS} Imported batch of 50 beatmapsets")
    >>> log.warning(f"{WARN} Beatmap 123 missing from API response")
"""

from __future__ import annotations

import inspect
import logging
import re
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from osu_complete.config import get_settings

SUCCESS = "\033[92m[SUCCESS]\033[0m"  # Green
FAIL = "\033[91m[FAIL]\033[0m"        # Red
WARN = "\033[93m[WARN]\033[0m"        # Yellow

LOG_FILE_PATTERN = "osu_complete_{time:YYYY-MM-DD}.log"

# Third-party loggers that are noisy at INFO: one line per HTTP request or SQL statement
QUIET_LOGGERS = {
    "urllib3": "WARNING",
    "sqlalchemy.engine": "WARNING",
}

_ANSI = re.compile(r"\x1b\[[0-9;]*m")


def strip_tags(message: str) -> str:
    """Remove the color codes of status tags from a message."""
    return _ANSI.sub("", message)


def _add_plain_message(record: Any) -> None:
    record["extra"]["plain"] = strip_tags(record["message"])


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru with the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str | None = None,
    log_dir: str | Path | None = None,
    rotation: str = "1 day",
    retention: str = "30 days",
    serialize: bool = False,
) -> None:
    """Configure application logging.

    Args:
        level: Minimum log level; defaults to ``settings.log_level``.
        log_dir: Directory for log files; defaults to ``settings.log_dir``.
        rotation: When to rotate log files (e.g., "1 day", "100 MB").
        retention: How long to keep old log files.
        serialize: Write JSON records to the file instead of plain lines.
    """
    settings = get_settings()
    level = level or settings.log_level
    log_path = Path(log_dir) if log_dir is not None else settings.log_dir_obj

    logger.remove()
    logger.configure(patcher=_add_plain_message)

    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    log_path.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_path / LOG_FILE_PATTERN,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {extra[plain]}",
        rotation=rotation,
        retention=retention,
        serialize=serialize,
        enqueue=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


__all__ = ["logger", "setup_logging", "strip_tags", "SUCCESS", "FAIL", "WARN"]
