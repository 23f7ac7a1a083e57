"""Find-or-create resolution of the CRM's Drive folders and data files."""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from crmsync.drive_api import (
    FOLDER_MIME_TYPE,
    JSON_MIME_TYPE,
    RemoteNotFoundError,
    RemoteStorageClient,
    build_query,
)
from crmsync.records import normalise_id

logger = logging.getLogger(__name__)

ROOT_FOLDER_NAME = "BYD CRM Data"
FORMS_FOLDER_NAME = "Form Templates"
EXCEL_FOLDER_NAME = "Excel Templates"
DATA_FILE_NAME = "BYD_CRM_Data.json"
FORMS_DATA_FILE_NAME = "forms_metadata.json"
EXCEL_DATA_FILE_NAME = "excel_templates.json"
CUSTOMER_SUBFOLDERS = ("NRIC", "Test Drive", "VSA", "Trade In", "Other Documents")

CACHE_PREFIX = "remote_id:"
ROOT_FOLDER_KEY = "root_folder"
FORMS_FOLDER_KEY = "forms_folder"
EXCEL_FOLDER_KEY = "excel_folder"
DATA_FILE_KEY = "data_file"
FORMS_DATA_FILE_KEY = "forms_data_file"
EXCEL_DATA_FILE_KEY = "excel_data_file"


@dataclass(frozen=True)
class CustomerFolder:
    folder_id: str
    folder_link: str
    subfolders: Dict[str, str] = field(default_factory=dict)


def folder_key(name: str, parent_id: Optional[str]) -> str:
    return f"folder:{parent_id or 'root'}/{name}"


def customer_folder_key(customer_id: Any) -> str:
    return f"customer_folder:{normalise_id(customer_id)}"


def serialise_payload(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


class RemoteResolver:
    """Map logical names to Drive ids, creating remote objects on first use.

    Ids are memoised in memory and, when ``storage`` is given, persisted under
    ``remote_id:<key>`` so a restart does not repeat the lookups. Lookups of
    the same key are single-flight: concurrent callers wait for the first one
    and then read its cached id.
    """

    def __init__(self, remote: RemoteStorageClient, storage=None) -> None:
        self._remote = remote
        self._storage = storage
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def cached(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._cache.get(key)
        if value:
            return value
        if self._storage is None:
            return None
        value = self._storage.get(CACHE_PREFIX + key)
        if value:
            with self._lock:
                self._cache[key] = value
        return value or None

    def remember(self, key: str, remote_id: str) -> None:
        with self._lock:
            self._cache[key] = remote_id
        if self._storage is not None:
            self._storage.set(CACHE_PREFIX + key, remote_id)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)
        if self._storage is not None:
            self._storage.delete(CACHE_PREFIX + key)
        logger.info("[Drive] Cleared cached id for %s", key)

    def invalidate_id(self, remote_id: str) -> None:
        """Drop every cached key that points at ``remote_id``."""

        keys = set()
        with self._lock:
            keys.update(key for key, value in self._cache.items() if value == remote_id)
        if self._storage is not None:
            for stored_key in self._storage.keys(CACHE_PREFIX):
                if self._storage.get(stored_key) == remote_id:
                    keys.add(stored_key[len(CACHE_PREFIX):])
        for key in keys:
            self.invalidate(key)

    def reset(self) -> None:
        with self._lock:
            self._cache.clear()
        if self._storage is not None:
            self._storage.delete(*self._storage.keys(CACHE_PREFIX))
        logger.info("[Drive] Remote id cache reset")

    @contextmanager
    def track(self, key: str) -> Iterator[None]:
        try:
            yield
        except RemoteNotFoundError:
            self.invalidate(key)
            raise

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _resolve(self, key: str, create: Callable[[], str], parent_id: Optional[str]) -> str:
        cached = self.cached(key)
        if cached:
            return cached
        with self._key_lock(key):
            cached = self.cached(key)
            if cached:
                return cached
            try:
                remote_id = create()
            except RemoteNotFoundError:
                if parent_id:
                    self.invalidate_id(parent_id)
                raise
            self.remember(key, remote_id)
            return remote_id

    # ------------------------------------------------------------------
    # Generic find-or-create
    # ------------------------------------------------------------------
    def find_or_create_folder(
        self, name: str, parent_id: Optional[str] = None, key: Optional[str] = None
    ) -> str:
        def create() -> str:
            query = build_query(name=name, parent_id=parent_id, mime_type=FOLDER_MIME_TYPE)
            matches = self._remote.list_files(query)
            if matches:
                return matches[0]["id"]
            created = self._remote.create(
                {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id or "root"]}
            )
            logger.info("[Drive] Created folder %r", name)
            return created["id"]

        return self._resolve(key or folder_key(name, parent_id), create, parent_id)

    def find_or_create_data_file(
        self,
        file_name: str,
        folder_id: str,
        empty_payload: Any,
        key: Optional[str] = None,
    ) -> str:
        def create() -> str:
            matches = self._remote.list_files(build_query(name=file_name, parent_id=folder_id))
            if matches:
                return matches[0]["id"]
            created = self._remote.create(
                {"name": file_name, "mimeType": JSON_MIME_TYPE, "parents": [folder_id]},
                body=serialise_payload(empty_payload),
                mime_type=JSON_MIME_TYPE,
            )
            logger.info("[Drive] Created data file %r", file_name)
            return created["id"]

        return self._resolve(key or f"file:{folder_id}/{file_name}", create, folder_id)

    # ------------------------------------------------------------------
    # CRM layout
    # ------------------------------------------------------------------
    def root_folder_id(self) -> str:
        return self.find_or_create_folder(ROOT_FOLDER_NAME, None, key=ROOT_FOLDER_KEY)

    def forms_folder_id(self) -> str:
        return self.find_or_create_folder(FORMS_FOLDER_NAME, self.root_folder_id(), key=FORMS_FOLDER_KEY)

    def excel_folder_id(self) -> str:
        return self.find_or_create_folder(EXCEL_FOLDER_NAME, self.root_folder_id(), key=EXCEL_FOLDER_KEY)

    def ensure_layout(self) -> Dict[str, str]:
        return {
            "root": self.root_folder_id(),
            "forms": self.forms_folder_id(),
            "excel": self.excel_folder_id(),
        }

    def data_file_id(self) -> str:
        return self.find_or_create_data_file(DATA_FILE_NAME, self.root_folder_id(), [], key=DATA_FILE_KEY)

    def forms_data_file_id(self) -> str:
        return self.find_or_create_data_file(
            FORMS_DATA_FILE_NAME, self.forms_folder_id(), {}, key=FORMS_DATA_FILE_KEY
        )

    def excel_data_file_id(self) -> str:
        return self.find_or_create_data_file(
            EXCEL_DATA_FILE_NAME, self.excel_folder_id(), {}, key=EXCEL_DATA_FILE_KEY
        )

    def ensure_customer_folder(self, customer: Mapping[str, Any]) -> CustomerFolder:
        customer_id = normalise_id(customer.get("id"))
        if not customer_id:
            raise ValueError("Customer record has no id")
        key = customer_folder_key(customer_id)
        known_id = customer.get("driveFolderId")
        if known_id and not self.cached(key):
            try:
                self._remote.get_metadata(str(known_id), fields="id")
            except RemoteNotFoundError:
                logger.info("[Drive] Stored folder of customer %s is gone; resolving again", customer_id)
            else:
                self.remember(key, str(known_id))

        name = str(customer.get("name") or "Customer").strip() or "Customer"
        folder_id = self.find_or_create_folder(f"{name} ({customer_id})", self.root_folder_id(), key=key)
        with self.track(key):
            metadata = self._remote.get_metadata(folder_id, fields="id, webViewLink")
        subfolders = {
            subfolder: self.find_or_create_folder(subfolder, folder_id) for subfolder in CUSTOMER_SUBFOLDERS
        }
        return CustomerFolder(
            folder_id=folder_id,
            folder_link=str(metadata.get("webViewLink") or ""),
            subfolders=subfolders,
        )


__all__ = [
    "CACHE_PREFIX",
    "CUSTOMER_SUBFOLDERS",
    "CustomerFolder",
    "DATA_FILE_KEY",
    "DATA_FILE_NAME",
    "EXCEL_DATA_FILE_KEY",
    "EXCEL_DATA_FILE_NAME",
    "EXCEL_FOLDER_KEY",
    "EXCEL_FOLDER_NAME",
    "FORMS_DATA_FILE_KEY",
    "FORMS_DATA_FILE_NAME",
    "FORMS_FOLDER_KEY",
    "FORMS_FOLDER_NAME",
    "ROOT_FOLDER_KEY",
    "ROOT_FOLDER_NAME",
    "RemoteResolver",
    "customer_folder_key",
    "folder_key",
    "serialise_payload",
]
