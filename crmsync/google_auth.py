"""OAuth consent provider backed by ``google-auth-oauthlib``."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

try:  # pragma: no cover - optional dependency guard
    from google.auth.exceptions import RefreshError, TransportError
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow
except ImportError:  # pragma: no cover - reported through deps_bootstrap
    RefreshError = TransportError = Exception  # type: ignore
    Request = None
    Credentials = None
    InstalledAppFlow = None

from crmsync import app_paths
from crmsync.drive_api import DEFAULT_SCOPES

logger = logging.getLogger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
DEFAULT_TOKEN_LIFETIME = 3600


class AuthError(RuntimeError):
    """Base class for authentication failures."""


class AuthConfigError(AuthError):
    """Raised when the OAuth client id/secret are not configured."""


class AuthInteractionError(AuthError):
    """Raised when the interactive consent prompt fails or is dismissed."""


class TokenRefreshError(AuthError):
    """Raised when a silent token request cannot be satisfied."""


class AuthLibraryUnavailableError(AuthError):
    """Raised when the Google client libraries never become importable."""


class TokenRevokeError(AuthError):
    """Raised when the remote revoke endpoint rejects the token."""


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: float


class ConsentProvider:
    """Source of access tokens for the token manager."""

    def configure(self) -> None:
        raise NotImplementedError

    def request_access_token(self, prompt: str) -> TokenResponse:
        raise NotImplementedError

    def revoke(self, token: str) -> None:
        raise NotImplementedError


def _ensure_google_auth() -> None:
    if Request is None or Credentials is None or InstalledAppFlow is None:
        raise AuthLibraryUnavailableError(
            "Google auth libraries are required. Install 'google-auth' and 'google-auth-oauthlib'."
        )


def _expires_in(credentials: Credentials) -> float:
    expiry = getattr(credentials, "expiry", None)
    if expiry is None:
        return float(DEFAULT_TOKEN_LIFETIME)
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return max(0.0, (expiry - now).total_seconds())


class GoogleConsentProvider(ConsentProvider):
    """Installed-app OAuth flow with an authorized-user token file.

    ``prompt="none"`` refreshes the stored authorized-user credentials
    without any UI. Any other prompt value opens the browser consent page
    through a loopback redirect.
    """

    def __init__(
        self,
        *,
        client_id: str = "",
        client_secret: str = "",
        client_secret_path: str = "",
        token_path: Optional[Path] = None,
        scopes: Optional[List[str]] = None,
    ) -> None:
        self._client_id = client_id.strip()
        self._client_secret = client_secret.strip()
        self._client_secret_path = client_secret_path.strip()
        self._token_path = Path(token_path) if token_path else app_paths.tokens_path("token.json")
        self._scopes = list(scopes or DEFAULT_SCOPES)
        self._client_config: Optional[Dict[str, Any]] = None

    @property
    def token_path(self) -> Path:
        return self._token_path

    def _load_client_config(self) -> Dict[str, Any]:
        if self._client_secret_path:
            path = Path(self._client_secret_path).expanduser()
            if not path.exists():
                raise AuthConfigError(f"Client secret file not found: {path}")
            try:
                with path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                raise AuthConfigError(f"Client secret file could not be read: {exc}") from exc
            if not isinstance(data, dict) or not ({"installed", "web"} & set(data)):
                raise AuthConfigError("Client secret file is not an OAuth client configuration")
            return data
        if self._client_id and self._client_secret:
            return {
                "installed": {
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "auth_uri": AUTH_URI,
                    "token_uri": TOKEN_URI,
                    "redirect_uris": ["http://localhost"],
                }
            }
        raise AuthConfigError(
            "Google OAuth client is not configured. Set CRMSYNC_CLIENT_ID and "
            "CRMSYNC_CLIENT_SECRET or point CRMSYNC_CLIENT_SECRET_PATH at a client secret file."
        )

    def configure(self) -> None:
        _ensure_google_auth()
        self._client_config = self._load_client_config()
        logger.info("[Auth] OAuth client configured")

    def _require_config(self) -> Dict[str, Any]:
        if self._client_config is None:
            raise AuthConfigError("OAuth client has not been configured")
        return self._client_config

    def _store(self, credentials: Credentials) -> None:
        self._token_path.parent.mkdir(parents=True, exist_ok=True)
        with self._token_path.open("w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())

    def request_access_token(self, prompt: str) -> TokenResponse:
        _ensure_google_auth()
        config = self._require_config()
        if prompt == "none":
            credentials = self._refresh_silently()
        else:
            try:
                flow = InstalledAppFlow.from_client_config(config, self._scopes)
                credentials = flow.run_local_server(port=0, prompt=prompt)
            except Exception as exc:
                raise AuthInteractionError(f"Google sign-in did not complete: {exc}") from exc
        if not credentials.token:
            raise TokenRefreshError("Google returned no access token")
        self._store(credentials)
        return TokenResponse(access_token=credentials.token, expires_in=_expires_in(credentials))

    def _refresh_silently(self) -> Credentials:
        if not self._token_path.exists():
            raise TokenRefreshError("No stored Google authorization to refresh")
        try:
            credentials = Credentials.from_authorized_user_file(str(self._token_path), self._scopes)
        except (OSError, ValueError) as exc:
            raise TokenRefreshError(f"Stored Google authorization is unreadable: {exc}") from exc
        if not credentials.refresh_token:
            raise TokenRefreshError("Stored Google authorization has no refresh token")
        try:
            credentials.refresh(Request())
        except (RefreshError, TransportError) as exc:
            raise TokenRefreshError(f"Silent token refresh failed: {exc}") from exc
        return credentials

    def revoke(self, token: str) -> None:
        try:
            _ensure_google_auth()
            request = Request()
            response = request(
                url=REVOKE_URI,
                method="POST",
                body=urlencode({"token": token}),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            if response.status != 200:
                raise TokenRevokeError(f"Token revoke returned status {response.status}")
        finally:
            try:
                os.remove(self._token_path)
            except FileNotFoundError:
                pass


__all__ = [
    "AuthConfigError",
    "AuthError",
    "AuthInteractionError",
    "AuthLibraryUnavailableError",
    "ConsentProvider",
    "GoogleConsentProvider",
    "TokenRefreshError",
    "TokenResponse",
    "TokenRevokeError",
]
