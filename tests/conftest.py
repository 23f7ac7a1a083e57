from __future__ import annotations

import json
import os
import re
import sys
import tempfile
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("CRMSYNC_HOME", tempfile.mkdtemp(prefix="crmsync-tests-"))

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

import db
from crmsync.drive_api import (
    FOLDER_MIME_TYPE,
    RemoteNotFoundError,
    RemoteStorageClient,
)
from crmsync.google_auth import AuthConfigError, ConsentProvider, TokenResponse
from crmsync.scheduler import Clock, Scheduler, TimerHandle

START_TIME = 1_700_000_000.0


class ManualClock(Clock):
    def __init__(self, start: float = START_TIME) -> None:
        self._now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = value

    def advance(self, seconds: float) -> None:
        self._now += seconds


class _ManualHandle(TimerHandle):
    def __init__(self, due: float, interval: Optional[float], callback, seq: int) -> None:
        super().__init__()
        self.due = due
        self.interval = interval
        self.callback = callback
        self.seq = seq


class ManualScheduler(Scheduler):
    """Timers that only fire when the test advances time."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._timers: List[_ManualHandle] = []
        self._seq = 0

    def _add(self, delay: float, interval: Optional[float], callback) -> _ManualHandle:
        self._seq += 1
        handle = _ManualHandle(self.clock.time() + max(0.0, delay), interval, callback, self._seq)
        self._timers.append(handle)
        return handle

    def call_later(self, delay: float, callback) -> TimerHandle:
        return self._add(delay, None, callback)

    def call_every(self, interval: float, callback) -> TimerHandle:
        return self._add(interval, interval, callback)

    def active(self) -> List[_ManualHandle]:
        self._timers = [handle for handle in self._timers if not handle.cancelled]
        return list(self._timers)

    def one_shot_delays(self) -> List[float]:
        now = self.clock.time()
        return sorted(handle.due - now for handle in self.active() if handle.interval is None)

    def advance(self, seconds: float = 0.0) -> None:
        target = self.clock.time() + seconds
        while True:
            due = [handle for handle in self.active() if handle.due <= target]
            if not due:
                break
            handle = min(due, key=lambda item: (item.due, item.seq))
            self.clock.set(max(self.clock.time(), handle.due))
            if handle.interval is None:
                self._timers.remove(handle)
            else:
                handle.due += handle.interval
            handle.callback()
        self.clock.set(target)


class FakeRemoteStorage(RemoteStorageClient):
    """In-memory Drive stand-in that understands the resolver's queries."""

    def __init__(self) -> None:
        self.files: Dict[str, Dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self.uploads: List[Any] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    # Test helpers -----------------------------------------------------
    def fail(self, method: str, exc: Exception, times: int = 1) -> None:
        self.failures.setdefault(method, []).extend([exc] * times)

    def delete(self, file_id: str) -> None:
        self.files.pop(file_id, None)

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [entry for entry in self.files.values() if entry["name"] == name]

    def json_content(self, file_id: str) -> Any:
        return json.loads(self.files[file_id]["content"].decode("utf-8"))

    def _enter(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
            pending = self.failures.get(method)
            failure = pending.pop(0) if pending else None
        hook = self.hooks.get(method)
        if hook is not None:
            hook()
        if failure is not None:
            raise failure

    def _new_id(self) -> str:
        with self._lock:
            self._next_id += 1
            return f"file-{self._next_id}"

    @staticmethod
    def _unescape(value: str) -> str:
        return re.sub(r"\\(.)", r"\1", value)

    # RemoteStorageClient ----------------------------------------------
    def list_files(self, query: str) -> List[Dict[str, Any]]:
        self._enter("list_files")
        name = re.search(r"name = '((?:[^'\\]|\\.)*)'", query)
        parent = re.search(r"'((?:[^'\\]|\\.)*)' in parents", query)
        mime = re.search(r"mimeType = '((?:[^'\\]|\\.)*)'", query)
        matches = []
        for entry in list(self.files.values()):
            if name and entry["name"] != self._unescape(name.group(1)):
                continue
            if parent and self._unescape(parent.group(1)) not in entry["parents"]:
                continue
            if mime and entry["mimeType"] != self._unescape(mime.group(1)):
                continue
            matches.append({"id": entry["id"], "name": entry["name"], "mimeType": entry["mimeType"]})
        return matches

    def get_media(self, file_id: str) -> bytes:
        self._enter("get_media")
        entry = self.files.get(file_id)
        if entry is None:
            raise RemoteNotFoundError(f"File {file_id} not found", 404)
        return entry["content"] or b""

    def get_metadata(self, file_id: str, fields: str = "") -> Dict[str, Any]:
        self._enter("get_metadata")
        entry = self.files.get(file_id)
        if entry is None:
            raise RemoteNotFoundError(f"File {file_id} not found", 404)
        return {
            "id": file_id,
            "name": entry["name"],
            "webViewLink": f"https://drive.google.com/drive/folders/{file_id}",
        }

    def create(self, metadata, body=None, mime_type="application/json") -> Dict[str, Any]:
        self._enter("create")
        parents = list(metadata.get("parents") or ["root"])
        for parent in parents:
            if parent != "root" and parent not in self.files:
                raise RemoteNotFoundError(f"Parent {parent} not found", 404)
        file_id = self._new_id()
        self.files[file_id] = {
            "id": file_id,
            "name": metadata["name"],
            "mimeType": metadata.get("mimeType", mime_type),
            "parents": parents,
            "content": body,
        }
        return {"id": file_id, "name": metadata["name"]}

    def update(self, file_id: str, body: bytes, mime_type: str = "application/json") -> Dict[str, Any]:
        self._enter("update")
        entry = self.files.get(file_id)
        if entry is None:
            raise RemoteNotFoundError(f"File {file_id} not found", 404)
        entry["content"] = body
        self.uploads.append(json.loads(body.decode("utf-8")))
        return {"id": file_id}

    def about(self) -> Dict[str, Any]:
        self._enter("about")
        return {"user": {"displayName": "Test Consultant"}}

    def folders(self) -> List[Dict[str, Any]]:
        return [entry for entry in self.files.values() if entry["mimeType"] == FOLDER_MIME_TYPE]


class FakeConsentProvider(ConsentProvider):
    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses: List[Any] = list(responses or [])
        self.prompts: List[str] = []
        self.revoked: List[str] = []
        self.configure_calls = 0
        self.config_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self._issued = 0

    def configure(self) -> None:
        self.configure_calls += 1
        if self.config_error is not None:
            raise self.config_error

    def request_access_token(self, prompt: str) -> TokenResponse:
        self.prompts.append(prompt)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        self._issued += 1
        return TokenResponse(access_token=f"token-{self._issued}", expires_in=3600)

    def revoke(self, token: str) -> None:
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


@pytest.fixture(autouse=True)
def temp_db(tmp_path):
    db_path = tmp_path / "crmsync.db"
    db.set_database_path(db_path)
    db.initialize_database()
    return db_path


@pytest.fixture
def kv():
    return db.KeyValueStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def remote():
    return FakeRemoteStorage()


@pytest.fixture
def consent():
    return FakeConsentProvider()


@pytest.fixture
def missing_config_error():
    return AuthConfigError("Google OAuth client is not configured")
