"""
Result cache for upstream API responses.

Entries are keyed by a request fingerprint and carry their own TTL. Reads
never delete anything: an entry past its TTL is simply not returned by
``get``, but stays available to ``get_stale`` until it is older than the
cache-wide maximum stale age. Only ``sweep`` physically removes entries.
"""

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_STALE_AGE = 48 * 60 * 60


def fingerprint(endpoint: str, params: dict[str, Any] | None = None) -> str:
    """Build a deterministic cache key from an endpoint and its query params."""
    return f"{endpoint}_{json.dumps(params or {}, sort_keys=True, default=str)}"


@dataclass
class CacheEntry:
    """One cached response."""

    fingerprint: str
    payload: Any
    stored_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) <= self.ttl


class ResultCache:
    """
    Thread-safe TTL cache with stale-on-failure reads.

    Args:
        max_stale_age: Upper bound (seconds) on how old a payload may be
            and still be returned, even as a fallback.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_stale_age: float = DEFAULT_MAX_STALE_AGE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_stale_age = max_stale_age
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        """Return the payload if it is within its TTL, else None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(self._clock()):
                return None
        logger.debug(f"Cache hit for key: {key}")
        return entry.payload

    def put(self, key: str, payload: Any, ttl: float) -> None:
        """Store a payload with its own TTL (seconds)."""
        entry = CacheEntry(fingerprint=key, payload=payload, stored_at=self._clock(), ttl=ttl)
        with self._lock:
            self._entries[key] = entry
        logger.debug(f"Cached data for key: {key} (TTL: {ttl}s)")

    def get_stale(self, key: str, max_age: float | None = None) -> Any | None:
        """
        Return the payload if it is no older than ``max_age``, ignoring TTL.

        Only meant as a fallback after an upstream failure. ``max_age`` is
        clamped to the cache-wide ``max_stale_age``.
        """
        limit = self.max_stale_age if max_age is None else min(max_age, self.max_stale_age)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.age(self._clock()) > limit:
                return None
        return entry.payload

    def sweep(self) -> int:
        """Remove entries older than the maximum stale age. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.age(now) > self.max_stale_age
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug(f"Cleaned {len(expired)} expired cache entries")
        return len(expired)

    def clear(self) -> int:
        """Drop every entry. Returns count removed."""
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {size} cache entries")
        return size

    def stats(self) -> dict[str, int]:
        """Count fresh and stale entries."""
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        fresh = sum(1 for e in entries if e.is_fresh(now))
        return {"total": len(entries), "fresh": fresh, "stale": len(entries) - fresh}
