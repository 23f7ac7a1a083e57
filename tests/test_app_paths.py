from __future__ import annotations

from pathlib import Path

from crmsync import app_paths


def test_override_directory_takes_precedence(tmp_path, monkeypatch):
    monkeypatch.setenv("CRMSYNC_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "roaming"))

    assert app_paths._detect_base_directory() == (tmp_path / "home").resolve()


def test_platform_directory_used_without_override(tmp_path, monkeypatch):
    monkeypatch.delenv("CRMSYNC_HOME", raising=False)
    monkeypatch.delenv("LOCALAPPDATA", raising=False)
    monkeypatch.setenv("APPDATA", str(tmp_path))

    assert app_paths._detect_base_directory() == tmp_path.resolve() / "CrmSync"


def test_helpers_create_parent_directories(tmp_path, monkeypatch):
    monkeypatch.setattr(app_paths, "APP_DIR", tmp_path)
    monkeypatch.setattr(app_paths, "TOKENS_DIR", tmp_path / "tokens")
    monkeypatch.setattr(app_paths, "LOG_DIR", tmp_path / "logs")

    nested = app_paths.data_path("cache", "customers.json")
    token = app_paths.tokens_path("token.json")
    log = app_paths.logs_path("crmsync.log")

    assert nested == tmp_path / "cache" / "customers.json"
    assert nested.parent.is_dir()
    assert token.parent == Path(tmp_path / "tokens") and token.parent.is_dir()
    assert log.parent.is_dir()
