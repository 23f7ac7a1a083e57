"""Google Drive session lifecycle: sign-in, silent refresh and health checks."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from crmsync.credential_store import CredentialStore
from crmsync.drive_api import RemoteAuthError, RemoteError
from crmsync.google_auth import (
    AuthConfigError,
    AuthError,
    AuthLibraryUnavailableError,
    ConsentProvider,
)
from crmsync.listeners import ListenerRegistry
from crmsync.scheduler import Clock, Scheduler, SystemClock, ThreadScheduler, TimerHandle

logger = logging.getLogger(__name__)

SESSION_EXPIRED_NOTICE = "Your Google Drive session has expired. Please reconnect."

REFRESH_BUFFER_SECONDS = 300
REFRESH_RETRY_LIMIT = 3
REFRESH_RETRY_DELAY = 5.0
PERIODIC_REFRESH_INTERVAL = 45 * 60
HEALTH_CHECK_INTERVAL = 10 * 60
LIBRARY_POLL_INTERVAL = 0.1
LIBRARY_WAIT_TIMEOUT = 10.0

AuthListener = Callable[[bool], None]
NoticeCallback = Callable[[str], None]
LibraryProbe = Callable[[], Sequence[str]]
HealthCheck = Callable[[], object]


class AuthState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    SIGNED_OUT = "signed_out"
    SIGNED_IN = "signed_in"


class NotSignedInError(RuntimeError):
    """Raised when an access token is requested without an active session."""


def _no_missing_libraries() -> Sequence[str]:
    return ()


class TokenManager:
    """Own the access token and keep it fresh.

    Listeners registered with :meth:`on_auth_change` receive ``True`` when a
    session starts and ``False`` when it ends. Timers are created through the
    injected :class:`Scheduler`, so tests can advance time by hand.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        consent_provider: ConsentProvider,
        *,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
        library_probe: Optional[LibraryProbe] = None,
        health_check: Optional[HealthCheck] = None,
        notice_callback: Optional[NoticeCallback] = None,
        refresh_buffer: float = REFRESH_BUFFER_SECONDS,
        refresh_retry_limit: int = REFRESH_RETRY_LIMIT,
        refresh_retry_delay: float = REFRESH_RETRY_DELAY,
        periodic_refresh_interval: float = PERIODIC_REFRESH_INTERVAL,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        library_poll_interval: float = LIBRARY_POLL_INTERVAL,
        library_wait_timeout: float = LIBRARY_WAIT_TIMEOUT,
    ) -> None:
        self._store = credential_store
        self._consent = consent_provider
        self._scheduler = scheduler or ThreadScheduler()
        self._clock = clock or SystemClock()
        self._library_probe = library_probe or _no_missing_libraries
        self._health_check = health_check
        self._notice_callback = notice_callback
        self._refresh_buffer = refresh_buffer
        self._refresh_retry_limit = max(1, refresh_retry_limit)
        self._refresh_retry_delay = refresh_retry_delay
        self._periodic_refresh_interval = periodic_refresh_interval
        self._health_check_interval = health_check_interval
        self._library_poll_interval = library_poll_interval
        self._library_wait_timeout = library_wait_timeout

        self._lock = threading.RLock()
        self._refresh_lock = threading.Lock()
        self._state = AuthState.UNINITIALIZED
        self._token: Optional[str] = None
        self._refresh_failures = 0
        self._timers: Dict[str, TimerHandle] = {}
        self._listeners = ListenerRegistry("[Auth] Auth")

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------
    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._state

    @property
    def is_signed_in(self) -> bool:
        return self.state is AuthState.SIGNED_IN

    @property
    def refresh_failures(self) -> int:
        with self._lock:
            return self._refresh_failures

    def access_token(self) -> str:
        with self._lock:
            if self._state is not AuthState.SIGNED_IN or not self._token:
                raise NotSignedInError("Sign in to Google Drive first")
            return self._token

    def set_health_check(self, health_check: Optional[HealthCheck]) -> None:
        self._health_check = health_check

    def active_timers(self) -> List[str]:
        with self._lock:
            return sorted(name for name, handle in self._timers.items() if not handle.cancelled)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        with self._lock:
            if self._state is not AuthState.UNINITIALIZED:
                return
            self._state = AuthState.INITIALIZING
        try:
            self._wait_for_libraries()
            self._consent.configure()
        except Exception:
            with self._lock:
                self._state = AuthState.UNINITIALIZED
            raise

        credential = self._store.read()
        if credential is None:
            with self._lock:
                self._state = AuthState.SIGNED_OUT
            logger.info("[Auth] No stored session; signed out")
            return

        remaining = credential.remaining_seconds(self._clock.now_ms())
        logger.info("[Auth] Restored stored session (%.0fs remaining)", remaining)
        self._begin_session(credential.access_token, remaining, persist=False)

    def _wait_for_libraries(self) -> None:
        deadline = self._clock.time() + self._library_wait_timeout
        while True:
            missing = list(self._library_probe())
            if not missing:
                return
            if self._clock.time() >= deadline:
                raise AuthLibraryUnavailableError(
                    "Google client libraries did not become available: " + ", ".join(missing)
                )
            logger.debug("[Auth] Waiting for libraries: %s", ", ".join(missing))
            self._clock.sleep(self._library_poll_interval)

    def _require_initialized(self) -> None:
        if self.state not in (AuthState.SIGNED_OUT, AuthState.SIGNED_IN):
            raise AuthConfigError("Authentication has not been initialised")

    def sign_in(self) -> None:
        self._require_initialized()
        try:
            response = self._consent.request_access_token(prompt="consent")
        except AuthError:
            logger.warning("[Auth] Interactive sign-in failed", exc_info=True)
            if not self.is_signed_in:
                self._notify(False)
            raise
        logger.info("[Auth] Signed in")
        self._begin_session(response.access_token, response.expires_in, persist=True)

    def sign_out(self) -> None:
        with self._lock:
            token = self._token
        if token:
            try:
                self._consent.revoke(token)
            except Exception as exc:
                logger.warning("[Auth] Token revoke failed: %s", exc)
        self._end_session()
        logger.info("[Auth] Signed out")
        self._notify(False)

    def shutdown(self) -> None:
        """Cancel every timer without touching the stored session."""

        self._cancel_timers()

    def _begin_session(self, token: str, expires_in: float, *, persist: bool) -> None:
        if persist:
            self._store.save(token, expires_in)
        with self._lock:
            was_signed_in = self._state is AuthState.SIGNED_IN
            self._token = token
            self._state = AuthState.SIGNED_IN
            self._refresh_failures = 0
        self.schedule_refresh(expires_in)
        self._start_recurring_timers()
        if not was_signed_in:
            self._notify(True)

    def _end_session(self) -> bool:
        self._store.clear()
        self._cancel_timers()
        with self._lock:
            was_signed_in = self._state is AuthState.SIGNED_IN
            self._token = None
            self._refresh_failures = 0
            if self._state is not AuthState.UNINITIALIZED:
                self._state = AuthState.SIGNED_OUT
        return was_signed_in

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _set_timer(self, name: str, handle: TimerHandle) -> None:
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = handle
        if previous is not None:
            previous.cancel()

    def _cancel_timer(self, name: str) -> None:
        with self._lock:
            handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def _cancel_timers(self) -> None:
        with self._lock:
            handles = list(self._timers.values())
            self._timers.clear()
        for handle in handles:
            handle.cancel()

    def _start_recurring_timers(self) -> None:
        with self._lock:
            running = set(self._timers)
        if "periodic" not in running:
            self._set_timer(
                "periodic",
                self._scheduler.call_every(self._periodic_refresh_interval, self._periodic_refresh),
            )
        if "health" not in running:
            self._set_timer(
                "health",
                self._scheduler.call_every(self._health_check_interval, self.check_health),
            )

    def schedule_refresh(self, expires_in_seconds: float) -> None:
        self._cancel_timer("refresh")
        delay = float(expires_in_seconds) - self._refresh_buffer
        if delay <= 0:
            logger.info("[Auth] Token lifetime is inside the refresh buffer; refreshing now")
            delay = 0.0
        else:
            logger.debug("[Auth] Token refresh scheduled in %.0fs", delay)
        self._set_timer("refresh", self._scheduler.call_later(delay, self.refresh))

    def _periodic_refresh(self) -> None:
        if self.is_signed_in:
            self.refresh()

    # ------------------------------------------------------------------
    # Refresh and health
    # ------------------------------------------------------------------
    def refresh(self) -> bool:
        """Request a new token silently. Returns ``True`` on success."""

        if not self._refresh_lock.acquire(blocking=False):
            logger.debug("[Auth] Refresh already in flight")
            return False
        try:
            if not self.is_signed_in:
                return False
            try:
                response = self._consent.request_access_token(prompt="none")
            except (AuthError, RemoteError, OSError) as exc:
                self._handle_refresh_failure(exc)
                return False
            self._store.save(response.access_token, response.expires_in)
            with self._lock:
                self._token = response.access_token
                self._refresh_failures = 0
            self._cancel_timer("retry")
            self.schedule_refresh(response.expires_in)
            logger.info("[Auth] Access token refreshed")
            return True
        finally:
            self._refresh_lock.release()

    def _handle_refresh_failure(self, exc: Exception) -> None:
        with self._lock:
            self._refresh_failures += 1
            failures = self._refresh_failures
        if failures < self._refresh_retry_limit:
            logger.warning(
                "[Auth] Token refresh failed (attempt %s/%s): %s",
                failures,
                self._refresh_retry_limit,
                exc,
            )
            self._set_timer("retry", self._scheduler.call_later(self._refresh_retry_delay, self.refresh))
            return

        logger.error("[Auth] Token refresh failed %s times; ending session: %s", failures, exc)
        if self._end_session():
            self._notify(False)
        self._emit_notice(SESSION_EXPIRED_NOTICE)

    def check_health(self) -> None:
        health_check = self._health_check
        if health_check is None or not self.is_signed_in:
            return
        try:
            health_check()
        except RemoteAuthError as exc:
            if exc.status in (None, 401):
                logger.warning("[Auth] Health check rejected the token; refreshing")
                self.refresh()
            else:
                logger.warning("[Auth] Health check denied: %s", exc)
        except Exception as exc:
            logger.warning("[Auth] Health check failed: %s", exc)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def _notify(self, signed_in: bool) -> None:
        self._listeners.notify(signed_in)

    def _emit_notice(self, message: str) -> None:
        callback = self._notice_callback
        if callback is None:
            logger.warning("[Auth] %s", message)
            return
        try:
            callback(message)
        except Exception:
            logger.exception("[Auth] Notice callback failed")


__all__ = [
    "AuthState",
    "NotSignedInError",
    "SESSION_EXPIRED_NOTICE",
    "TokenManager",
]
