"""Configuration for the Drive sync core."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Dict, Mapping, Optional, Tuple

from crmsync import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_FILENAME = "sync_settings.json"

ENV_CLIENT_ID = "CRMSYNC_CLIENT_ID"
ENV_CLIENT_SECRET = "CRMSYNC_CLIENT_SECRET"
ENV_CLIENT_SECRET_PATH = "CRMSYNC_CLIENT_SECRET_PATH"
ENV_CONSULTANT_ID = "CRMSYNC_CONSULTANT_ID"
ENV_DB_PATH = "CRMSYNC_DB_PATH"

ENV_OVERRIDES: Mapping[str, str] = {
    "client_id": ENV_CLIENT_ID,
    "client_secret": ENV_CLIENT_SECRET,
    "client_secret_path": ENV_CLIENT_SECRET_PATH,
    "consultant_id": ENV_CONSULTANT_ID,
    "db_path": ENV_DB_PATH,
}

# (minimum, maximum) accepted for each numeric setting.
NUMERIC_LIMITS: Mapping[str, Tuple[int, int]] = {
    "drain_interval_seconds": (5, 600),
    "auto_sync_minutes": (0, 120),
    "periodic_refresh_minutes": (5, 55),
    "health_check_minutes": (1, 60),
    "refresh_retry_limit": (1, 10),
    "refresh_retry_delay_seconds": (1, 120),
    "queue_max_retries": (1, 10),
    "backoff_base_seconds": (1, 60),
    "backoff_max_seconds": (1, 3600),
    "library_wait_timeout_seconds": (1, 120),
}


class SettingsError(RuntimeError):
    """Raised when the settings file exists but cannot be read."""


@dataclass
class DriveSyncSettings:
    client_id: str = ""
    client_secret: str = ""
    client_secret_path: str = ""
    consultant_id: str = ""
    db_path: str = ""
    drain_interval_seconds: int = 30
    auto_sync_minutes: int = 5
    periodic_refresh_minutes: int = 45
    health_check_minutes: int = 10
    refresh_retry_limit: int = 3
    refresh_retry_delay_seconds: int = 5
    queue_max_retries: int = 3
    backoff_base_seconds: int = 2
    backoff_max_seconds: int = 60
    library_wait_timeout_seconds: int = 10

    @property
    def has_client_config(self) -> bool:
        return bool(self.client_secret_path or (self.client_id and self.client_secret))

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def default_settings_path() -> str:
    return str(app_paths.data_path(SYNC_SETTINGS_FILENAME))


def _clamp(key: str, value: object, default: int) -> int:
    minimum, maximum = NUMERIC_LIMITS[key]
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("Setting %s=%r is not a number; using %s", key, value, default)
        return default
    return max(minimum, min(maximum, number))


def _ensure_sync_settings(path: str) -> Dict[str, object]:
    default_settings = DriveSyncSettings().to_json()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return dict(default_settings)

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise SettingsError(f"Could not read sync settings from {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Sync settings in {path} must be a JSON object")

    merged: Dict[str, object] = dict(default_settings)
    for key, value in data.items():
        if key in NUMERIC_LIMITS:
            merged[key] = _clamp(key, value, int(default_settings[key]))  # type: ignore[arg-type]
        elif key in default_settings and isinstance(value, str):
            merged[key] = value.strip()
    return merged


def _apply_env_overrides(data: Dict[str, object]) -> None:
    for key, env_var in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[key] = value.strip()


def load_drive_sync_settings(path: Optional[str] = None) -> DriveSyncSettings:
    data = _ensure_sync_settings(path or default_settings_path())
    _apply_env_overrides(data)
    known = {item.name for item in fields(DriveSyncSettings)}
    settings = DriveSyncSettings(**{key: value for key, value in data.items() if key in known})
    if settings.backoff_max_seconds < settings.backoff_base_seconds:
        settings.backoff_max_seconds = settings.backoff_base_seconds
    return settings


def save_drive_sync_settings(settings: DriveSyncSettings, path: Optional[str] = None) -> None:
    target = path or default_settings_path()
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()

    with open(target, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DriveSyncSettings",
    "ENV_CLIENT_ID",
    "ENV_CLIENT_SECRET",
    "ENV_CLIENT_SECRET_PATH",
    "ENV_CONSULTANT_ID",
    "ENV_DB_PATH",
    "NUMERIC_LIMITS",
    "SettingsError",
    "default_settings_path",
    "load_drive_sync_settings",
    "save_drive_sync_settings",
]
