"""
Logging setup for the autoforge engine.

Two modes:
- ``configure_logging``: human-readable lines on the ``autoforge`` logger
  hierarchy, to the console and optionally to a file.
- ``setup_structured_logging``: one JSON object per record on the root
  logger, for log collectors.

The orchestrator sets ``project_name_var`` while it advances a project, so
records emitted during that tick carry the project name in either mode.

Usage:
    from autoforge.logging_config import configure_from_settings

    configure_from_settings(load_settings())

Environment Variables:
    AUTOFORGE_LOG_DIR - Override default log directory
    AUTOFORGE_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import IO, Optional

LOGGER_NAME = "autoforge"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(project)s): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Project currently being advanced by the operational loop
project_name_var: ContextVar[Optional[str]] = ContextVar("project_name", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "project",
}


def _level(name: Optional[str]) -> int:
    if not name:
        name = os.environ.get("AUTOFORGE_LOG_LEVEL", "INFO")
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


class StructuredFormatter(logging.Formatter):
    """Render a record as one JSON object.

    Keys: timestamp, level, logger, message, project, exception (when
    present), plus every ``extra=`` field on the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "project": project_name_var.get(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS and key not in entry
        )
        return json.dumps(entry, default=str)


class ProjectContextFilter(logging.Filter):
    """Attach the active project name to plain-text records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.project = project_name_var.get() or "-"
        return True


def _attach(
    logger: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ProjectContextFilter())
    logger.addHandler(handler)


def setup_structured_logging(log_level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """Send JSON records from the root logger to ``stream`` (stdout by default)."""
    level = _level(log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    _attach(root_logger, logging.StreamHandler(stream or sys.stdout), level, StructuredFormatter())


def get_default_log_dir(workspace: Optional[Path] = None) -> Path:
    """Return the log directory, honouring ``AUTOFORGE_LOG_DIR``."""
    override = os.environ.get("AUTOFORGE_LOG_DIR")
    if override:
        return Path(override)
    return Path(workspace or Path.cwd()) / "logs"


def configure_logging(
    project_name: Optional[str] = None,
    workspace: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = False,
    log_filename: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``autoforge`` logger hierarchy. Safe to call repeatedly.

    Args:
        project_name: Log filename prefix when ``log_filename`` is not given
        workspace: Base for the default log directory
        log_dir: Log directory (overrides the default)
        log_level: Level name; falls back to ``AUTOFORGE_LOG_LEVEL`` then INFO
        log_to_console: Add a stdout handler
        log_to_file: Add a file handler (always DEBUG)
        log_filename: Custom log filename

    Returns:
        The ``autoforge`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    level = _level(log_level)
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)

    if log_to_console:
        _attach(logger, logging.StreamHandler(sys.stdout), level, formatter)

    if log_to_file:
        directory = Path(log_dir) if log_dir is not None else get_default_log_dir(workspace)
        directory.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"{project_name or LOGGER_NAME}_{datetime.now():%Y%m%d_%H%M%S}.log"
        log_path = directory / log_filename
        _attach(logger, logging.FileHandler(log_path, mode="a", encoding="utf-8"), logging.DEBUG, formatter)
        logger.info(f"[Config] Logging to: {log_path}")

    return logger


def configure_from_settings(settings, log_to_console: bool = True) -> logging.Logger:
    """Apply ``settings.log_level`` and ``settings.log_dir``; a log dir enables file output."""
    return configure_logging(
        log_dir=Path(settings.log_dir) if settings.log_dir else None,
        log_level=settings.log_level,
        log_to_console=log_to_console,
        log_to_file=bool(settings.log_dir),
    )
