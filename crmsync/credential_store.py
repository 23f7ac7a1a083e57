"""Expiry-aware persistence of the Drive access token."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from crmsync.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

TOKEN_KEY = "access_token"
EXPIRY_KEY = "token_expiry"
EXPIRY_BUFFER_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class StoredCredential:
    access_token: str
    expires_at_ms: int

    def remaining_seconds(self, now_ms: int) -> float:
        return (self.expires_at_ms - now_ms) / 1000.0


class CredentialStore:
    """Persist an access token together with its absolute expiry.

    ``storage`` is any object with ``get(key)``, ``set(key, value)`` and
    ``delete(*keys)``; :class:`db.KeyValueStore` in production.
    """

    def __init__(self, storage, clock: Optional[Clock] = None, buffer_ms: int = EXPIRY_BUFFER_MS) -> None:
        self._storage = storage
        self._clock = clock or SystemClock()
        self._buffer_ms = buffer_ms
        self._lock = threading.Lock()

    def save(self, token: str, expires_in_seconds: float) -> StoredCredential:
        if not token:
            raise ValueError("Access token must not be empty")
        expires_at_ms = self._clock.now_ms() + int(float(expires_in_seconds) * 1000)
        with self._lock:
            self._storage.set_many({TOKEN_KEY: token, EXPIRY_KEY: str(expires_at_ms)})
        logger.debug("[Auth] Stored access token valid until %s", expires_at_ms)
        return StoredCredential(access_token=token, expires_at_ms=expires_at_ms)

    def read(self) -> Optional[StoredCredential]:
        with self._lock:
            token = self._storage.get(TOKEN_KEY)
            raw_expiry = self._storage.get(EXPIRY_KEY)
            if not token or raw_expiry is None:
                return None
            try:
                expires_at_ms = int(raw_expiry)
            except (TypeError, ValueError):
                logger.warning("[Auth] Stored token expiry %r is unreadable; clearing it", raw_expiry)
                self._storage.delete(TOKEN_KEY, EXPIRY_KEY)
                return None
            if self._clock.now_ms() >= expires_at_ms - self._buffer_ms:
                logger.info("[Auth] Stored access token is expired or about to expire")
                self._storage.delete(TOKEN_KEY, EXPIRY_KEY)
                return None
        return StoredCredential(access_token=token, expires_at_ms=expires_at_ms)

    def clear(self) -> None:
        with self._lock:
            self._storage.delete(TOKEN_KEY, EXPIRY_KEY)


__all__ = ["CredentialStore", "EXPIRY_BUFFER_MS", "EXPIRY_KEY", "StoredCredential", "TOKEN_KEY"]
