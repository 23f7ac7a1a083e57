from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from crmsync import deps_bootstrap, google_auth
from crmsync.google_auth import (
    AuthConfigError,
    AuthInteractionError,
    GoogleConsentProvider,
    TokenRefreshError,
    TokenRevokeError,
)


def test_configure_without_client_details_fails(tmp_path):
    provider = GoogleConsentProvider(token_path=tmp_path / "token.json")

    with pytest.raises(AuthConfigError):
        provider.configure()


def test_configure_from_client_id_and_secret(tmp_path):
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=tmp_path / "token.json")

    provider.configure()

    assert provider._require_config()["installed"]["client_id"] == "id"


@pytest.mark.parametrize("content", ["not json", json.dumps({"other": {}})])
def test_invalid_client_secret_file(tmp_path, content):
    secret = tmp_path / "client_secret.json"
    secret.write_text(content, encoding="utf-8")
    provider = GoogleConsentProvider(client_secret_path=str(secret), token_path=tmp_path / "token.json")

    with pytest.raises(AuthConfigError):
        provider.configure()


def test_missing_client_secret_file(tmp_path):
    provider = GoogleConsentProvider(
        client_secret_path=str(tmp_path / "absent.json"), token_path=tmp_path / "token.json"
    )

    with pytest.raises(AuthConfigError):
        provider.configure()


def test_silent_refresh_without_stored_authorization(tmp_path):
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=tmp_path / "token.json")
    provider.configure()

    with pytest.raises(TokenRefreshError):
        provider.request_access_token("none")


def test_interactive_sign_in_failure_is_wrapped(tmp_path, monkeypatch):
    class _Flow:
        def run_local_server(self, **kwargs):
            raise OSError("address in use")

    monkeypatch.setattr(
        google_auth.InstalledAppFlow, "from_client_config", classmethod(lambda cls, config, scopes: _Flow())
    )
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=tmp_path / "token.json")
    provider.configure()

    with pytest.raises(AuthInteractionError):
        provider.request_access_token("consent")


def test_interactive_sign_in_stores_authorization(tmp_path, monkeypatch):
    credentials = SimpleNamespace(token="fresh", expiry=None, to_json=lambda: '{"token": "fresh"}')

    class _Flow:
        def run_local_server(self, **kwargs):
            assert kwargs["prompt"] == "consent"
            return credentials

    monkeypatch.setattr(
        google_auth.InstalledAppFlow, "from_client_config", classmethod(lambda cls, config, scopes: _Flow())
    )
    token_path = tmp_path / "tokens" / "token.json"
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=token_path)
    provider.configure()

    response = provider.request_access_token("consent")

    assert response.access_token == "fresh"
    assert response.expires_in == google_auth.DEFAULT_TOKEN_LIFETIME
    assert json.loads(token_path.read_text(encoding="utf-8")) == {"token": "fresh"}


@pytest.mark.parametrize("status", [200, 400])
def test_revoke_always_removes_token_file(tmp_path, monkeypatch, status):
    token_path = tmp_path / "token.json"
    token_path.write_text("{}", encoding="utf-8")
    posted = []

    class _Request:
        def __call__(self, **kwargs):
            posted.append(kwargs)
            return SimpleNamespace(status=status)

    monkeypatch.setattr(google_auth, "Request", _Request)
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=token_path)

    if status == 200:
        provider.revoke("abc")
    else:
        with pytest.raises(TokenRevokeError):
            provider.revoke("abc")

    assert not token_path.exists()
    assert posted[0]["url"] == google_auth.REVOKE_URI
    assert posted[0]["body"] == "token=abc"


def test_dependency_probe_reports_missing_modules(monkeypatch):
    monkeypatch.setattr(deps_bootstrap, "GOOGLE_IMPORTS", ("json", "crmsync_missing_module"))

    assert deps_bootstrap.check_google_deps() == ["crmsync_missing_module"]
    assert deps_bootstrap.missing_dependencies() == ("crmsync_missing_module",)
    assert deps_bootstrap.ensure_google_deps() is False


def test_missing_auth_library_is_reported(tmp_path, monkeypatch):
    monkeypatch.setattr(google_auth, "InstalledAppFlow", None)
    provider = GoogleConsentProvider(client_id="id", client_secret="secret", token_path=tmp_path / "token.json")

    with pytest.raises(google_auth.AuthLibraryUnavailableError):
        provider.configure()
