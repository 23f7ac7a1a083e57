"""Clock and timer abstractions used by the token manager and the queue."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class Clock:
    """Wall-clock time source."""

    def time(self) -> float:
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError

    def now_ms(self) -> int:
        return int(self.time() * 1000)


class SystemClock(Clock):
    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(max(0.0, seconds))


class TimerHandle:
    """Cancellable handle returned by :class:`Scheduler` methods."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


class Scheduler:
    """Schedules one-shot and recurring callbacks."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        raise NotImplementedError


def _run_guarded(callback: TimerCallback) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Scheduled callback %r failed", callback)


class _ThreadTimerHandle(TimerHandle):
    def __init__(self) -> None:
        super().__init__()
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def _arm(self, delay: float, target: TimerCallback) -> None:
        with self._lock:
            if self.cancelled:
                return
            timer = threading.Timer(max(0.0, delay), target)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        super().cancel()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ThreadScheduler(Scheduler):
    """Run callbacks on daemon :class:`threading.Timer` threads."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = _ThreadTimerHandle()

        def fire() -> None:
            if not handle.cancelled:
                _run_guarded(callback)

        handle._arm(delay, fire)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("Interval must be positive")
        handle = _ThreadTimerHandle()

        def fire() -> None:
            if handle.cancelled:
                return
            _run_guarded(callback)
            handle._arm(interval, fire)

        handle._arm(interval, fire)
        return handle


__all__ = [
    "Clock",
    "Scheduler",
    "SystemClock",
    "ThreadScheduler",
    "TimerCallback",
    "TimerHandle",
]
