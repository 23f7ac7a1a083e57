"""Background thread that pushes queued local changes to Drive."""
from __future__ import annotations

import logging
import threading
from typing import List, Mapping, Optional, Sequence

from crmsync.sync_engine import SyncEngine
from crmsync.write_queue import ENTITY_TYPES, DrainReport, QueueEntry, WriteQueue

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_INTERVAL = 30.0


class QueueDrainer:
    """Drain the write queue while signed in, one engine batch per entity type."""

    def __init__(
        self,
        queue: WriteQueue,
        token_manager,
        engines: Mapping[str, SyncEngine],
        *,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
    ) -> None:
        self._queue = queue
        self._token_manager = token_manager
        self._engines = dict(engines)
        self._drain_interval = max(1.0, float(drain_interval))
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_report: Optional[DrainReport] = None

    @property
    def last_report(self) -> Optional[DrainReport]:
        return self._last_report

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="crmsync-drainer", daemon=True)
        self._thread.start()
        logger.info("[Queue] Background drainer started")

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=3)
        self._thread = None

    def kick(self, *_args) -> None:
        """Wake the drainer. Accepts and ignores listener arguments."""

        self._wake_event.set()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------
    def drain_once(self, entity_types: Sequence[str] = ENTITY_TYPES) -> DrainReport:
        if not self._token_manager.is_signed_in:
            logger.debug("[Queue] Not signed in; drain skipped")
            return DrainReport()
        report = self._queue.drain(self._push, entity_types)
        self._last_report = report
        return report

    def _push(self, entity_type: str, entries: List[QueueEntry]) -> Optional[bool]:
        engine = self._engines.get(entity_type)
        if engine is None:
            raise LookupError(f"No sync engine for {entity_type} changes")
        if engine.busy or not self._token_manager.is_signed_in:
            return None
        applied = engine.apply(entries)
        if applied is None:
            return None
        return True

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait(timeout=self._drain_interval)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.drain_once()
            except Exception:
                logger.exception("[Queue] Background drain failed")


__all__ = ["DEFAULT_DRAIN_INTERVAL", "QueueDrainer"]
