"""Thread-safe listener lists shared by the sync components."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


class ListenerRegistry:
    """Ordered subscriber list whose notifications iterate a snapshot."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._lock = threading.Lock()
        self._listeners: List[Tuple[object, Callable[..., Any]]] = []

    def add(self, listener: Callable[..., Any]) -> Callable[[], None]:
        if not callable(listener):
            raise TypeError("listener must be callable")
        key = object()
        with self._lock:
            self._listeners.append((key, listener))

        def unsubscribe() -> None:
            with self._lock:
                self._listeners = [entry for entry in self._listeners if entry[0] is not key]

        return unsubscribe

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def notify(self, *args: Any) -> None:
        with self._lock:
            listeners = [listener for _key, listener in self._listeners]
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("%s listener raised an exception", self._label)


__all__ = ["ListenerRegistry"]
