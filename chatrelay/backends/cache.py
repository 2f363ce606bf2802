"""
TTL cache for model listings.

The only shared mutable state in the relay: every request handler may read
or fill it concurrently, keyed by endpoint URL. Guarded by a lock, entries
expire after `ttl` seconds, and can be invalidated by hand (one key or all).
Generation responses never go through here.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)


class ModelListCache:
    """Thread-safe key/value map with per-entry expiry."""

    def __init__(self, ttl: float = 300.0, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Any, ttl: float | None = None):
        """Store a value; `ttl` overrides the cache default for this entry."""
        lifetime = self.ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, value)

    def invalidate(self, key: str | None = None):
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                count = len(self._entries)
                self._entries.clear()
                logger.debug("Model cache cleared (%d entries)", count)
            else:
                self._entries.pop(key, None)
                logger.debug("Model cache invalidated for %s", key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
