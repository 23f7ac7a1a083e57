"""Upload, download and merge of one CRM collection with its Drive data file."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from crmsync.documents import DocumentKind
from crmsync.drive_api import RemoteNotFoundError, RemoteStorageClient, RemoteTransportError
from crmsync.listeners import ListenerRegistry
from crmsync.resolver import RemoteResolver
from crmsync.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

DIRECTION_UPLOAD = "upload"
DIRECTION_DOWNLOAD = "download"
DIRECTION_MERGE = "merge"
SYNC_DIRECTIONS = (DIRECTION_UPLOAD, DIRECTION_DOWNLOAD, DIRECTION_MERGE)

STATUS_SYNCING = "syncing"
STATUS_UPLOADING = "uploading"
STATUS_DOWNLOADING = "downloading"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass
class SyncStatus:
    in_sync: bool = False
    last_sync_time: Optional[str] = None
    last_error: Optional[str] = None
    busy: bool = False


@dataclass(frozen=True)
class SyncEvent:
    status: str
    message: str
    last_sync_time: Optional[str] = None


SyncListener = Callable[[SyncEvent], None]


class SyncEngine:
    """Keep one collection in step with its remote JSON document.

    Only one of :meth:`sync`, :meth:`upload`, :meth:`download` and
    :meth:`apply` runs at a time; a call made while another is in flight
    logs and returns ``None``. The engine never writes local state: callers
    persist whatever a successful call returns.

    The merge direction is remote-authoritative. Local records whose id is
    unknown remotely are appended; edits to records that already exist
    remotely only travel through :meth:`apply`.
    """

    def __init__(
        self,
        kind: DocumentKind,
        remote: RemoteStorageClient,
        resolver: RemoteResolver,
        data_file_id: Callable[[], str],
        cache_key: str,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self._kind = kind
        self._remote = remote
        self._resolver = resolver
        self._data_file_id = data_file_id
        self._cache_key = cache_key
        self._clock = clock or SystemClock()
        self._busy_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._status = SyncStatus()
        self._listeners = ListenerRegistry(f"[Sync] {kind.name}")

    @property
    def kind(self) -> DocumentKind:
        return self._kind

    @property
    def status(self) -> SyncStatus:
        with self._state_lock:
            return replace(self._status)

    @property
    def busy(self) -> bool:
        return self._busy_lock.locked()

    def on_sync_change(self, callback: SyncListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def upload(self, records: Any) -> Optional[Any]:
        def run() -> Any:
            self._push(records)
            self._succeed(f"Uploaded {self._describe(records)}")
            return records

        return self._run_exclusive("upload", run)

    def download(self) -> Optional[Any]:
        def run() -> Any:
            collection = self._pull()
            self._succeed(f"Downloaded {self._describe(collection)}")
            return collection

        return self._run_exclusive("download", run)

    def sync(
        self,
        local: Any,
        direction: str = DIRECTION_MERGE,
        preserve: Optional[Callable[[Any], bool]] = None,
    ) -> Optional[Any]:
        """Run one sync in ``direction`` and return the collection to store locally.

        ``preserve`` selects remote records an upload must keep; without it
        an upload replaces the whole remote document with ``local``.
        """

        if direction not in SYNC_DIRECTIONS:
            raise ValueError(f"Unknown sync direction: {direction!r}")

        def run() -> Any:
            self._emit(STATUS_SYNCING, f"Syncing {self._kind.name} ({direction})")
            if direction == DIRECTION_UPLOAD:
                if preserve is None:
                    self._push(local)
                else:
                    self._push(self._kind.overlay(self._pull(), local, preserve))
                result = local
            elif direction == DIRECTION_DOWNLOAD:
                result = self._pull()
            else:
                result = self._merge(local)
            self._succeed(f"Sync complete: {self._describe(result)}")
            return result

        return self._run_exclusive("sync", run)

    def apply(self, entries: Sequence[Any]) -> Optional[int]:
        """Apply queued upserts/deletes with one download and one upload."""

        def run() -> int:
            self._emit(STATUS_SYNCING, f"Applying {len(entries)} queued {self._kind.name} change(s)")
            collection = self._pull()
            for entry in entries:
                if entry.operation == "delete":
                    collection = self._kind.remove(collection, entry.entity_id)
                else:
                    collection = self._kind.upsert(collection, entry.entity_id, entry.payload or {})
            self._push(collection)
            self._succeed(f"Applied {len(entries)} queued change(s)")
            return len(entries)

        return self._run_exclusive("apply", run)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _run_exclusive(self, label: str, operation: Callable[[], Any]) -> Optional[Any]:
        if not self._busy_lock.acquire(blocking=False):
            logger.info("[Sync] %s %s skipped: another operation is in flight", self._kind.name, label)
            return None
        try:
            with self._state_lock:
                self._status.busy = True
            try:
                return operation()
            except Exception as exc:
                self._fail(exc)
                raise
        finally:
            with self._state_lock:
                self._status.busy = False
            self._busy_lock.release()

    def _merge(self, local: Any) -> Any:
        kind = self._kind
        remote = self._pull()
        if kind.is_empty(remote):
            if kind.is_empty(local):
                return kind.empty()
            self._push(local)
            return local
        if kind.is_empty(local):
            return remote
        merged, appended = kind.merge(remote, local)
        if appended:
            logger.info("[Sync] Appending %s local-only %s record(s)", appended, kind.name)
            self._push(merged)
        return merged

    def _push(self, collection: Any) -> None:
        self._emit(STATUS_UPLOADING, f"Uploading {self._describe(collection)}")
        file_id = self._data_file_id()
        with self._resolver.track(self._cache_key):
            self._remote.update(file_id, self._kind.encode(collection))

    def _pull(self) -> Any:
        self._emit(STATUS_DOWNLOADING, f"Downloading {self._kind.name}")
        try:
            content = self._read_data_file()
        except RemoteNotFoundError:
            logger.info("[Sync] Cached %s file is gone; resolving it again", self._kind.name)
            try:
                content = self._read_data_file()
            except RemoteNotFoundError:
                logger.info("[Sync] Remote %s file is still missing; treating it as empty", self._kind.name)
                return self._kind.empty()
        try:
            return self._kind.decode(content)
        except (ValueError, UnicodeDecodeError) as exc:
            raise RemoteTransportError(f"Remote {self._kind.name} data is malformed: {exc}") from exc

    def _read_data_file(self) -> bytes:
        file_id = self._data_file_id()
        with self._resolver.track(self._cache_key):
            return self._remote.get_media(file_id)

    def _describe(self, collection: Any) -> str:
        return f"{len(collection)} {self._kind.name} record(s)"

    def _now_iso(self) -> str:
        moment = datetime.fromtimestamp(self._clock.time(), tz=timezone.utc)
        return moment.isoformat(timespec="seconds")

    def _succeed(self, message: str) -> None:
        with self._state_lock:
            self._status.in_sync = True
            self._status.last_sync_time = self._now_iso()
            self._status.last_error = None
        logger.info("[Sync] %s", message)
        self._emit(STATUS_SUCCESS, message)

    def _fail(self, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        with self._state_lock:
            self._status.in_sync = False
            self._status.last_error = message
        logger.warning("[Sync] %s sync failed: %s", self._kind.name, message)
        self._emit(STATUS_ERROR, message)

    def _emit(self, status: str, message: str) -> None:
        with self._state_lock:
            last_sync_time = self._status.last_sync_time
        self._listeners.notify(SyncEvent(status=status, message=message, last_sync_time=last_sync_time))


__all__ = [
    "DIRECTION_DOWNLOAD",
    "DIRECTION_MERGE",
    "DIRECTION_UPLOAD",
    "STATUS_DOWNLOADING",
    "STATUS_ERROR",
    "STATUS_SUCCESS",
    "STATUS_SYNCING",
    "STATUS_UPLOADING",
    "SYNC_DIRECTIONS",
    "SyncEngine",
    "SyncEvent",
    "SyncStatus",
]
