"""Google Drive v3 storage client used by the resolver and sync engines."""
from __future__ import annotations

import io
import logging
import socket
from typing import Any, Callable, Dict, List, Mapping, Optional

try:  # pragma: no cover - optional dependency guard
    import httplib2
    from google.oauth2.credentials import Credentials
    from googleapiclient.discovery import build
    from googleapiclient.errors import HttpError
    from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload
except ImportError:  # pragma: no cover - reported through deps_bootstrap
    httplib2 = None
    Credentials = None
    build = None
    HttpError = Exception  # type: ignore
    MediaIoBaseDownload = None
    MediaIoBaseUpload = None

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
JSON_MIME_TYPE = "application/json"
FILE_FIELDS = "id, name, mimeType, webViewLink"

TokenSource = Callable[[], str]


class RemoteError(RuntimeError):
    """Base class for failures talking to remote storage."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RemoteNotFoundError(RemoteError):
    """Raised when the requested remote object no longer exists."""


class RemoteAuthError(RemoteError):
    """Raised when the remote rejects the access token."""


class RemoteTransportError(RemoteError):
    """Raised for network failures, unexpected statuses and bad payloads."""


class GoogleClientUnavailable(RemoteTransportError):
    """Raised when the Google API client libraries are not installed."""


def _ensure_google_client() -> None:
    if build is None or httplib2 is None or MediaIoBaseUpload is None:
        raise GoogleClientUnavailable(
            "Google API client libraries are required. Install 'google-api-python-client' and 'httplib2'."
        )


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


def translate_http_error(exc: HttpError, action: str) -> RemoteError:
    status = http_status(exc)
    message = f"Drive {action} failed ({status or 'unknown status'}): {exc}"
    if status == 404:
        return RemoteNotFoundError(message, status)
    if status in (401, 403):
        return RemoteAuthError(message, status)
    return RemoteTransportError(message, status)


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_query(
    *,
    name: Optional[str] = None,
    parent_id: Optional[str] = None,
    mime_type: Optional[str] = None,
    include_trashed: bool = False,
) -> str:
    """Return a Drive ``files.list`` query string.

    A missing ``parent_id`` scopes the query to the user's root folder.
    """

    parts: List[str] = []
    if mime_type:
        parts.append(f"mimeType = '{escape_query_value(mime_type)}'")
    if not include_trashed:
        parts.append("trashed = false")
    if name is not None:
        parts.append(f"name = '{escape_query_value(name)}'")
    parent_ref = parent_id or "root"
    parts.append(f"'{escape_query_value(parent_ref)}' in parents")
    return " and ".join(parts)


class RemoteStorageClient:
    """Minimal remote file storage surface needed by the sync core."""

    def list_files(self, query: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_media(self, file_id: str) -> bytes:
        raise NotImplementedError

    def get_metadata(self, file_id: str, fields: str = FILE_FIELDS) -> Dict[str, Any]:
        raise NotImplementedError

    def create(
        self,
        metadata: Mapping[str, Any],
        body: Optional[bytes] = None,
        mime_type: str = JSON_MIME_TYPE,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, file_id: str, body: bytes, mime_type: str = JSON_MIME_TYPE) -> Dict[str, Any]:
        raise NotImplementedError

    def about(self) -> Dict[str, Any]:
        raise NotImplementedError


class DriveStorageClient(RemoteStorageClient):
    """Talk to Drive v3 with a bearer token supplied by ``token_source``.

    The discovery client is rebuilt whenever the token changes so a silent
    refresh is picked up by the next request. Passing ``service`` pins a
    prebuilt client, which is how the tests drive this class.
    """

    def __init__(self, token_source: Optional[TokenSource] = None, *, service=None) -> None:
        if token_source is None and service is None:
            raise ValueError("Either token_source or service is required")
        self._token_source = token_source
        self._fixed_service = service
        self._service = None
        self._service_token: Optional[str] = None

    def _get_service(self):
        _ensure_google_client()
        if self._fixed_service is not None:
            return self._fixed_service
        token = self._token_source()
        if self._service is None or token != self._service_token:
            credentials = Credentials(token=token)
            self._service = build("drive", "v3", credentials=credentials, cache_discovery=False)
            self._service_token = token
            logger.debug("[Drive] Built Drive v3 client for a new access token")
        return self._service

    def _execute(self, action: str, make_request: Callable[[Any], Any]) -> Any:
        service = self._get_service()
        try:
            return make_request(service).execute()
        except HttpError as exc:
            error = translate_http_error(exc, action)
            logger.warning("[Drive] %s", error)
            raise error from exc
        except (httplib2.HttpLib2Error, socket.timeout, OSError) as exc:
            logger.warning("[Drive] %s failed: %s", action, exc)
            raise RemoteTransportError(f"Drive {action} failed: {exc}") from exc

    def list_files(self, query: str) -> List[Dict[str, Any]]:
        files: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            response = self._execute(
                "list",
                lambda service: service.files().list(
                    q=query,
                    spaces="drive",
                    fields=f"nextPageToken, files({FILE_FIELDS})",
                    pageToken=page_token,
                ),
            )
            files.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return files

    def get_media(self, file_id: str) -> bytes:
        service = self._get_service()
        buffer = io.BytesIO()
        try:
            downloader = MediaIoBaseDownload(buffer, service.files().get_media(fileId=file_id))
            done = False
            while not done:
                _, done = downloader.next_chunk()
        except HttpError as exc:
            error = translate_http_error(exc, "download")
            logger.warning("[Drive] %s", error)
            raise error from exc
        except (httplib2.HttpLib2Error, socket.timeout, OSError) as exc:
            logger.warning("[Drive] download failed: %s", exc)
            raise RemoteTransportError(f"Drive download failed: {exc}") from exc
        return buffer.getvalue()

    def get_metadata(self, file_id: str, fields: str = FILE_FIELDS) -> Dict[str, Any]:
        return self._execute(
            "metadata",
            lambda service: service.files().get(fileId=file_id, fields=fields),
        )

    def create(
        self,
        metadata: Mapping[str, Any],
        body: Optional[bytes] = None,
        mime_type: str = JSON_MIME_TYPE,
    ) -> Dict[str, Any]:
        _ensure_google_client()
        media = None
        if body is not None:
            media = MediaIoBaseUpload(io.BytesIO(body), mimetype=mime_type, resumable=False)
        return self._execute(
            "create",
            lambda service: service.files().create(
                body=dict(metadata), media_body=media, fields=FILE_FIELDS
            ),
        )

    def update(self, file_id: str, body: bytes, mime_type: str = JSON_MIME_TYPE) -> Dict[str, Any]:
        _ensure_google_client()
        media = MediaIoBaseUpload(io.BytesIO(body), mimetype=mime_type, resumable=False)
        return self._execute(
            "update",
            lambda service: service.files().update(fileId=file_id, media_body=media, fields="id"),
        )

    def about(self) -> Dict[str, Any]:
        return self._execute("about", lambda service: service.about().get(fields="user"))


__all__ = [
    "DEFAULT_SCOPES",
    "DriveStorageClient",
    "FILE_FIELDS",
    "FOLDER_MIME_TYPE",
    "GoogleClientUnavailable",
    "JSON_MIME_TYPE",
    "RemoteAuthError",
    "RemoteError",
    "RemoteNotFoundError",
    "RemoteStorageClient",
    "RemoteTransportError",
    "build_query",
    "escape_query_value",
    "http_status",
    "translate_http_error",
]
