"""Durable queue of local mutations waiting to reach Drive."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import db
from crmsync.listeners import ListenerRegistry
from crmsync.records import new_id, normalise_id, utc_now_iso
from crmsync.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ENTITY_CUSTOMER = "customer"
ENTITY_FORM = "form"
ENTITY_EXCEL = "excel"
ENTITY_TYPES = (ENTITY_CUSTOMER, ENTITY_FORM, ENTITY_EXCEL)

OPERATION_UPSERT = "upsert"
OPERATION_DELETE = "delete"
OPERATIONS = (OPERATION_UPSERT, OPERATION_DELETE)

EVENT_QUEUED = "queued"
EVENT_COMPLETED = "completed"
EVENT_RETRYING = "retrying"
EVENT_FAILED = "failed"

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_MAX = 60.0


@dataclass(frozen=True)
class QueueEntry:
    id: str
    consultant_id: Optional[str]
    entity_type: str
    entity_id: str
    operation: str
    payload: Any
    status: str
    retry_count: int
    error: Optional[str]
    next_attempt_at_ms: int
    created_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueueEntry":
        return cls(
            id=row["id"],
            consultant_id=row.get("consultant_id"),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=row["operation"],
            payload=row.get("payload"),
            status=row["status"],
            retry_count=int(row.get("retry_count") or 0),
            error=row.get("error"),
            next_attempt_at_ms=int(row.get("next_attempt_at") or 0),
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    processing: int
    failed: int
    total: int


@dataclass
class DrainReport:
    completed: int = 0
    retrying: int = 0
    failed: int = 0
    deferred: int = 0

    @property
    def attempted(self) -> int:
        return self.completed + self.retrying + self.failed


class BackoffController:
    def __init__(
        self,
        base: float = DEFAULT_BACKOFF_BASE,
        maximum: float = DEFAULT_BACKOFF_MAX,
        attempts: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.base = base
        self.maximum = maximum
        self.attempts = attempts

    def delay(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` failures."""

        exponent = max(0, retry_count - 1)
        return min(self.base * (2**exponent), self.maximum)

    def schedule(self) -> List[float]:
        return [self.delay(attempt) for attempt in range(1, self.attempts + 1)]


QueueHandler = Callable[[str, List[QueueEntry]], Optional[bool]]
QueueListener = Callable[[str, QueueEntry], None]


class WriteQueue:
    """Queue mutations per consultant and replay them in creation order.

    ``drain(handler)`` hands each entity type's due entries to
    ``handler(entity_type, entries)``. Returning ``None`` means the handler
    did not attempt the work; raising marks the batch as failed.
    """

    def __init__(
        self,
        consultant_id: Optional[str] = None,
        *,
        clock: Optional[Clock] = None,
        backoff: Optional[BackoffController] = None,
    ) -> None:
        self._consultant_id = consultant_id
        self._clock = clock or SystemClock()
        self._backoff = backoff or BackoffController()
        self._drain_lock = threading.Lock()
        self._listeners = ListenerRegistry("[Queue] Queue")
        self._recover_processing()

    @property
    def max_retries(self) -> int:
        return self._backoff.attempts

    def add_listener(self, callback: QueueListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def _recover_processing(self) -> None:
        for row in db.fetch_queue_entries(statuses=[STATUS_PROCESSING], consultant_id=self._consultant_id):
            db.update_queue_entry(row["id"], status=STATUS_PENDING)
            logger.info("[Queue] Recovered interrupted entry %s", row["id"])

    def _entries(self, statuses, entity_type: Optional[str] = None) -> List[QueueEntry]:
        rows = db.fetch_queue_entries(
            statuses=statuses, entity_type=entity_type, consultant_id=self._consultant_id
        )
        return [QueueEntry.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------
    def enqueue(self, entity_type: str, entity_id: Any, operation: str, payload: Any = None) -> QueueEntry:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type!r}")
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown queue operation: {operation!r}")
        entry = QueueEntry(
            id=new_id(),
            consultant_id=self._consultant_id,
            entity_type=entity_type,
            entity_id=normalise_id(entity_id),
            operation=operation,
            payload=payload,
            status=STATUS_PENDING,
            retry_count=0,
            error=None,
            next_attempt_at_ms=0,
            created_at=utc_now_iso(),
        )
        db.insert_queue_entry(
            {
                "id": entry.id,
                "consultant_id": entry.consultant_id,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "operation": entry.operation,
                "payload": entry.payload,
                "status": entry.status,
                "created_at": entry.created_at,
            }
        )
        logger.debug("[Queue] Queued %s %s %s", operation, entity_type, entry.entity_id)
        self._listeners.notify(EVENT_QUEUED, entry)
        return entry

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------
    def drain(self, handler: QueueHandler, entity_types=ENTITY_TYPES) -> DrainReport:
        report = DrainReport()
        with self._drain_lock:
            for entity_type in entity_types:
                self._drain_type(entity_type, handler, report)
        return report

    def due_batch(self, entity_type: str) -> List[QueueEntry]:
        """Return the leading entries of ``entity_type`` that may run now."""

        now_ms = self._clock.now_ms()
        batch: List[QueueEntry] = []
        for entry in self._entries([STATUS_PENDING, STATUS_FAILED], entity_type):
            if entry.status == STATUS_FAILED or entry.next_attempt_at_ms > now_ms:
                break
            batch.append(entry)
        return batch

    def _drain_type(self, entity_type: str, handler: QueueHandler, report: DrainReport) -> None:
        batch = self.due_batch(entity_type)
        if not batch:
            return
        for entry in batch:
            db.update_queue_entry(entry.id, status=STATUS_PROCESSING)
        try:
            outcome = handler(entity_type, batch)
        except Exception as exc:
            logger.warning("[Queue] %s %s change(s) failed: %s", len(batch), entity_type, exc)
            self._record_failure(batch, exc, report)
            return
        if outcome is None:
            for entry in batch:
                db.update_queue_entry(entry.id, status=STATUS_PENDING)
            report.deferred += len(batch)
            logger.debug("[Queue] %s drain deferred", entity_type)
            return
        for entry in batch:
            db.update_queue_entry(entry.id, status=STATUS_COMPLETED, error=None)
            db.delete_queue_entry(entry.id)
            report.completed += 1
            self._listeners.notify(EVENT_COMPLETED, entry)
        logger.info("[Queue] Pushed %s %s change(s)", len(batch), entity_type)

    def _record_failure(self, batch: List[QueueEntry], exc: Exception, report: DrainReport) -> None:
        message = str(exc) or exc.__class__.__name__
        now_ms = self._clock.now_ms()
        for entry in batch:
            retry_count = entry.retry_count + 1
            if retry_count < self.max_retries:
                delay = self._backoff.delay(retry_count)
                db.update_queue_entry(
                    entry.id,
                    status=STATUS_PENDING,
                    retry_count=retry_count,
                    error=message,
                    next_attempt_at=now_ms + int(delay * 1000),
                )
                report.retrying += 1
                self._listeners.notify(EVENT_RETRYING, self.get(entry.id) or entry)
            else:
                db.update_queue_entry(
                    entry.id, status=STATUS_FAILED, retry_count=retry_count, error=message
                )
                report.failed += 1
                logger.error(
                    "[Queue] Giving up on %s %s after %s attempts: %s",
                    entry.entity_type,
                    entry.entity_id,
                    retry_count,
                    message,
                )
                self._listeners.notify(EVENT_FAILED, self.get(entry.id) or entry)

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------
    def get(self, entry_id: str) -> Optional[QueueEntry]:
        for entry in self._entries(None):
            if entry.id == entry_id:
                return entry
        return None

    def entries(self) -> List[QueueEntry]:
        return self._entries(None)

    def pending_entries(self, entity_type: Optional[str] = None) -> List[QueueEntry]:
        return self._entries([STATUS_PENDING], entity_type)

    def failed_entries(self) -> List[QueueEntry]:
        return self._entries([STATUS_FAILED])

    def has_due_work(self) -> bool:
        return any(self.due_batch(entity_type) for entity_type in ENTITY_TYPES)

    def status(self) -> QueueStatus:
        counts: Dict[str, int] = db.count_queue_entries(self._consultant_id)
        return QueueStatus(
            pending=counts.get(STATUS_PENDING, 0),
            processing=counts.get(STATUS_PROCESSING, 0),
            failed=counts.get(STATUS_FAILED, 0),
            total=sum(counts.values()),
        )

    def retry_failed(self) -> int:
        failed = self.failed_entries()
        for entry in failed:
            db.update_queue_entry(
                entry.id, status=STATUS_PENDING, retry_count=0, error=None, next_attempt_at=0
            )
        if failed:
            logger.info("[Queue] Re-queued %s failed entr%s", len(failed), "y" if len(failed) == 1 else "ies")
        return len(failed)

    def clear(self) -> int:
        removed = 0
        for entry in self._entries(None):
            db.delete_queue_entry(entry.id)
            removed += 1
        return removed


__all__ = [
    "BackoffController",
    "DrainReport",
    "ENTITY_CUSTOMER",
    "ENTITY_EXCEL",
    "ENTITY_FORM",
    "ENTITY_TYPES",
    "EVENT_COMPLETED",
    "EVENT_FAILED",
    "EVENT_QUEUED",
    "EVENT_RETRYING",
    "OPERATION_DELETE",
    "OPERATION_UPSERT",
    "QueueEntry",
    "QueueStatus",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "STATUS_PROCESSING",
    "WriteQueue",
]
