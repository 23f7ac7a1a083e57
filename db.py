"""SQLite-backed local persistence for the CRM sync core."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from crmsync import app_paths

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
DB_ENV_VAR = "CRMSYNC_DB_PATH"
DB_FILENAME = "crmsync.db"

_DB_PATH: Optional[Path] = None
_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

KV_COLUMN_DEFINITIONS: Dict[str, str] = {
    "key": "TEXT PRIMARY KEY",
    "value": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

QUEUE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "seq": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "id": "TEXT NOT NULL UNIQUE",
    "consultant_id": "TEXT",
    "entity_type": "TEXT NOT NULL",
    "entity_id": "TEXT NOT NULL",
    "operation": "TEXT NOT NULL",
    "payload": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'pending'",
    "retry_count": "INTEGER NOT NULL DEFAULT 0",
    "error": "TEXT",
    "next_attempt_at": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

QUEUE_UPDATABLE_FIELDS = {"status", "retry_count", "error", "next_attempt_at"}


def _default_database_path() -> Path:
    override = os.environ.get(DB_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return app_paths.data_path(DB_FILENAME).resolve()


def database_path() -> Path:
    """Return the SQLite file in use, resolving the default on first access."""

    global _DB_PATH
    if _DB_PATH is None:
        _DB_PATH = _default_database_path()
    return _DB_PATH


def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    kv_columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in KV_COLUMN_DEFINITIONS.items()
    )
    conn.execute(f"CREATE TABLE IF NOT EXISTS kv_store (\n        {kv_columns}\n    )")

    queue_columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in QUEUE_COLUMN_DEFINITIONS.items()
    )
    conn.execute(f"CREATE TABLE IF NOT EXISTS sync_queue (\n        {queue_columns}\n    )")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_queue_status ON sync_queue(status)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_entity_type ON sync_queue(entity_type, seq)"
    )


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        path = database_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True
        logger.debug("Database schema ready at %s", path)


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(database_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_database() -> Path:
    """Create the schema if needed and return the database location."""

    _ensure_database()
    return database_path()


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


# ---------------------------------------------------------------------------
# Key/value storage
# ---------------------------------------------------------------------------

class KeyValueStore:
    """Durable string key/value storage backed by the ``kv_store`` table."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with transaction() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set(self, key: str, value: str) -> None:
        with transaction() as conn:
            conn.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, str(value), _utc_now_iso()),
            )

    def set_many(self, values: Mapping[str, str]) -> None:
        now = _utc_now_iso()
        with transaction() as conn:
            conn.executemany(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                [(key, str(value), now) for key, value in values.items()],
            )

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        with transaction() as conn:
            conn.executemany("DELETE FROM kv_store WHERE key = ?", [(key,) for key in keys])

    def keys(self, prefix: str = "") -> List[str]:
        with transaction() as conn:
            cursor = conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row["key"] for row in cursor.fetchall()]

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value for %s is not valid JSON; ignoring it", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Sync queue storage
# ---------------------------------------------------------------------------

def _queue_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    payload = data.get("payload")
    if payload:
        try:
            data["payload"] = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Queue entry %s has an unreadable payload", data.get("id"))
            data["payload"] = None
    else:
        data["payload"] = None
    return data


def insert_queue_entry(entry: Mapping[str, Any]) -> None:
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            "INSERT INTO sync_queue (id, consultant_id, entity_type, entity_id, operation, payload, "
            "status, retry_count, error, next_attempt_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry["id"],
                entry.get("consultant_id"),
                entry["entity_type"],
                str(entry["entity_id"]),
                entry["operation"],
                json.dumps(entry.get("payload"), ensure_ascii=False),
                entry.get("status", "pending"),
                int(entry.get("retry_count", 0)),
                entry.get("error"),
                int(entry.get("next_attempt_at", 0)),
                entry.get("created_at") or now,
                now,
            ),
        )


def fetch_queue_entries(
    *,
    statuses: Optional[Sequence[str]] = None,
    entity_type: Optional[str] = None,
    consultant_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM sync_queue"
    clauses: List[str] = []
    params: List[Any] = []
    if statuses:
        clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params.extend(statuses)
    if entity_type:
        clauses.append("entity_type = ?")
        params.append(entity_type)
    if consultant_id is not None:
        clauses.append("consultant_id = ?")
        params.append(consultant_id)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY seq"
    with transaction() as conn:
        cursor = conn.execute(sql, params)
        return [_queue_row_to_dict(row) for row in cursor.fetchall()]


def update_queue_entry(entry_id: str, **fields: Any) -> None:
    unknown = set(fields) - QUEUE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown queue fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = ", ".join(f"{name} = ?" for name in fields)
    values = list(fields.values())
    values.extend([_utc_now_iso(), entry_id])
    with transaction() as conn:
        conn.execute(
            f"UPDATE sync_queue SET {assignments}, updated_at = ? WHERE id = ?",
            values,
        )


def delete_queue_entry(entry_id: str) -> None:
    with transaction() as conn:
        conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))


def count_queue_entries(consultant_id: Optional[str] = None) -> Dict[str, int]:
    sql = "SELECT status, COUNT(*) AS total FROM sync_queue"
    params: List[Any] = []
    if consultant_id is not None:
        sql += " WHERE consultant_id = ?"
        params.append(consultant_id)
    sql += " GROUP BY status"
    with transaction() as conn:
        cursor = conn.execute(sql, params)
        return {row["status"]: int(row["total"]) for row in cursor.fetchall()}


# ---------------------------------------------------------------------------
# Module exports
# ---------------------------------------------------------------------------

__all__ = [
    "DB_ENV_VAR",
    "KeyValueStore",
    "count_queue_entries",
    "database_path",
    "delete_queue_entry",
    "fetch_queue_entries",
    "get_connection",
    "initialize_database",
    "insert_queue_entry",
    "set_database_path",
    "transaction",
    "update_queue_entry",
]
