"""
result_cache.py — Bounded, TTL-expiring LRU cache for external lookups.

The cache is a pure in-memory optimisation: every fetch that goes through
it must be safe to re-run as if the cache did not exist.  It is shared
process-wide, so all operations take the instance lock.

Usage:
    cache = ResultCache(max_size=500, ttl=300)
    hit = cache.get("costs-/subscriptions/abc-30d")
    if hit is MISS:
        cache.set("costs-/subscriptions/abc-30d", fetch())
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Iterator, Tuple

MISS = object()


class ResultCache:
    """Thread-safe LRU map with a uniform time-to-live."""

    def __init__(
        self,
        max_size: int = 500,
        ttl: float = 300.0,
        update_age_on_get: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self.update_age_on_get = update_age_on_get
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, inserted_at); order = least recently used first
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def _expired(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at >= self.ttl

    def get(self, key: str, default: Any = MISS) -> Any:
        """Return the cached value, or ``default`` on an absent or expired key."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, inserted_at = entry
            if self._expired(inserted_at, now):
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            if self.update_age_on_get:
                self._entries[key] = (value, now)
            return value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            else:
                self._purge_expired(now)
                while len(self._entries) >= self.max_size:
                    self._entries.popitem(last=False)
            self._entries[key] = (value, now)

    def _purge_expired(self, now: float) -> None:
        stale = [k for k, (_, ts) in self._entries.items() if self._expired(ts, now)]
        for k in stale:
            del self._entries[k]

    def items(self) -> Iterator[Tuple[str, Any]]:
        """Snapshot of live entries, least recently used first."""
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            snapshot = [(k, v) for k, (v, _) in self._entries.items()]
        return iter(snapshot)

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry[1], now)

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            return len(self._entries)

