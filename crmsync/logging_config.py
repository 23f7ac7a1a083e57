"""Logging setup shared by the CLI and the background workers."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from crmsync import app_paths

LOG_FILENAME = "crmsync.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"

_LOG_PATH: Optional[Path] = None


def _has_handler(root: logging.Logger, handler_type: type, **attributes: object) -> bool:
    for handler in root.handlers:
        if type(handler) is not handler_type:
            continue
        if all(getattr(handler, name, None) == value for name, value in attributes.items()):
            return True
    return False


def configure_logging(
    level: int = logging.INFO,
    log_path: Optional[Path] = None,
    *,
    console: bool = False,
) -> Path:
    """Attach the sync log file (and optionally stderr) to the root logger.

    Calling this again is harmless: handlers are only added once per target.
    ``console`` mirrors records to stderr, which the CLI enables with
    ``--verbose``.
    """

    global _LOG_PATH

    target = Path(log_path) if log_path else (_LOG_PATH or app_paths.logs_path(LOG_FILENAME))
    target.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(level)
    else:
        root_logger.setLevel(min(root_logger.level, level))

    if not _has_handler(root_logger, logging.FileHandler, baseFilename=os.path.abspath(target)):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)

    if console and not _has_handler(root_logger, logging.StreamHandler, stream=sys.stderr):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root_logger.addHandler(console_handler)

    _LOG_PATH = target
    root_logger.debug("Logging configured. Writing to %s", target)
    return target


def get_log_path() -> Path:
    """Return the active log file, configuring logging on first use."""

    return _LOG_PATH or configure_logging()


__all__ = ["LOG_FILENAME", "LOG_FORMAT", "configure_logging", "get_log_path"]
