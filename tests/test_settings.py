from __future__ import annotations

import json

import pytest

import settings
from settings import DriveSyncSettings, SettingsError, load_drive_sync_settings, save_drive_sync_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for env_var in settings.ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)


def test_first_load_writes_defaults(tmp_path):
    path = tmp_path / "config" / "sync_settings.json"

    loaded = load_drive_sync_settings(str(path))

    assert loaded == DriveSyncSettings()
    assert json.loads(path.read_text(encoding="utf-8"))["drain_interval_seconds"] == 30
    assert not loaded.has_client_config


def test_values_are_clamped_and_unknown_keys_ignored(tmp_path):
    path = tmp_path / "sync_settings.json"
    path.write_text(
        json.dumps(
            {
                "drain_interval_seconds": 1,
                "periodic_refresh_minutes": 90,
                "queue_max_retries": "4",
                "health_check_minutes": "often",
                "client_id": "  abc.apps.googleusercontent.com ",
                "theme": "dark",
            }
        ),
        encoding="utf-8",
    )

    loaded = load_drive_sync_settings(str(path))

    assert loaded.drain_interval_seconds == 5
    assert loaded.periodic_refresh_minutes == 55
    assert loaded.queue_max_retries == 4
    assert loaded.health_check_minutes == 10
    assert loaded.client_id == "abc.apps.googleusercontent.com"


def test_backoff_maximum_never_below_base(tmp_path):
    path = tmp_path / "sync_settings.json"
    path.write_text(json.dumps({"backoff_base_seconds": 30, "backoff_max_seconds": 10}), encoding="utf-8")

    loaded = load_drive_sync_settings(str(path))

    assert loaded.backoff_max_seconds == 30


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "sync_settings.json"
    path.write_text(json.dumps({"client_id": "from-file"}), encoding="utf-8")
    monkeypatch.setenv(settings.ENV_CLIENT_ID, "from-env")
    monkeypatch.setenv(settings.ENV_CLIENT_SECRET, "secret")
    monkeypatch.setenv(settings.ENV_CONSULTANT_ID, "c42")

    loaded = load_drive_sync_settings(str(path))

    assert loaded.client_id == "from-env"
    assert loaded.consultant_id == "c42"
    assert loaded.has_client_config


@pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
def test_unreadable_settings_raise(tmp_path, content):
    path = tmp_path / "sync_settings.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(SettingsError):
        load_drive_sync_settings(str(path))


def test_save_then_load_round_trip(tmp_path):
    path = tmp_path / "nested" / "sync_settings.json"
    custom = DriveSyncSettings(client_secret_path="/tmp/client.json", auto_sync_minutes=0, consultant_id="c1")

    save_drive_sync_settings(custom, str(path))

    assert load_drive_sync_settings(str(path)) == custom
