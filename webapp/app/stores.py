"""
Key-Value Stores

Explicit, injectable stores backing the session ticket store and the
per-user token cache. Keys are opaque strings; values are opaque to the
store.

Eviction policy: every entry carries a TTL. With `sliding=True` a
successful `get` pushes the expiry forward by the TTL again. Expired
entries are purged lazily on access.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal store interface: get, set, remove keyed by an opaque string."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class InMemoryTTLStore:
    """
    In-memory TTL store.

    Guarded by a threading lock since it is used both from the event loop
    and from threadpool workers (MSAL code redemption).
    """

    def __init__(
        self,
        ttl_seconds: float,
        sliding: bool = False,
        clock: Callable[[], float] = time.monotonic,
        name: str = "store",
    ):
        """
        Args:
            ttl_seconds: Default lifetime of an entry
            sliding: Renew the lifetime on every successful read
            clock: Monotonic time source (injectable for tests)
            name: Label used in log records
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._entries: Dict[str, Tuple[Any, float, float]] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self._sliding = sliding
        self._clock = clock
        self._name = name

    def get(self, key: str) -> Optional[Any]:
        """
        Return the stored value, or None if absent or expired.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            value, expires_at, ttl = entry
            now = self._clock()
            if now >= expires_at:
                del self._entries[key]
                logger.debug(f"Expired entry evicted from {self._name}")
                return None

            if self._sliding:
                self._entries[key] = (value, now + ttl, ttl)

            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """
        Create or replace an entry.

        Args:
            key: Opaque key
            value: Value to store
            ttl_seconds: Per-entry TTL overriding the store default
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl_seconds
        if ttl <= 0:
            # Already expired; make sure no stale value survives.
            self.remove(key)
            return

        with self._lock:
            self._entries[key] = (value, self._clock() + ttl, ttl)
            self._purge_expired()

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _purge_expired(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        expired_keys = [key for key, (_, expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired_keys:
            del self._entries[key]
        if expired_keys:
            logger.debug(f"Purged {len(expired_keys)} expired entries from {self._name}")
