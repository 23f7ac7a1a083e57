"""Centralised helpers for managing CRM sync application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("LOCALAPPDATA", "APPDATA")
_APP_DIR_OVERRIDE = "CRMSYNC_HOME"


def _detect_base_directory() -> Path:
    override = os.environ.get(_APP_DIR_OVERRIDE)
    if override:
        return Path(override).expanduser().resolve()
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            return Path(value).expanduser().resolve() / "CrmSync"
    return Path.home().resolve() / ".crmsync"


APP_DIR: Path = _detect_base_directory()
TOKENS_DIR: Path = APP_DIR / "tokens"
LOG_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, TOKENS_DIR, LOG_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def tokens_path(filename: str) -> Path:
    """Return the location of an OAuth token file."""

    ensure_directory(TOKENS_DIR)
    return TOKENS_DIR / filename


def logs_path(filename: str) -> Path:
    """Return the location of a log file inside :data:`LOG_DIR`."""

    ensure_directory(LOG_DIR)
    return LOG_DIR / filename


__all__ = [
    "APP_DIR",
    "TOKENS_DIR",
    "LOG_DIR",
    "data_path",
    "ensure_app_structure",
    "ensure_directory",
    "logs_path",
    "tokens_path",
]
