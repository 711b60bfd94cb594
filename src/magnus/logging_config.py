"""
Logging setup for the magnus runtime.

Modules log through ``logging.getLogger(__name__)``; this module only attaches
handlers to the package root logger so that library use stays silent unless
the CLI (or an embedding application) opts in.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

ROOT_LOGGER = "magnus"
LOG_FORMAT = "%(asctime)s [%(levelname)8s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    """
    Configure the ``magnus`` logger hierarchy.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path receiving the same records as stderr

    Returns:
        The configured package logger. Calling this twice does not add
        duplicate handlers; the level is updated in place.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: dict[str, Any]) -> None:
    """Render an event-hook payload as a single log line."""
    name = str(event.get("event", "event"))
    details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    level = logging.WARNING if name.endswith(("failed", "stuck", "timeout")) else logging.INFO
    logger.log(level, "%s %s", name, details)
