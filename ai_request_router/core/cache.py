"""
Short-lived status cache.

A bounded, thread-safe TTL cache for hot read paths (quota counters,
month-to-date spend). Owners invalidate entries on every write so a
cached value is never older than the last local mutation.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Tuple

_MISSING = object()


class TTLCache:
    """LRU-bounded cache whose entries expire after ``ttl_seconds``.

    Args:
        ttl_seconds: Entry lifetime; 0 disables caching entirely
        max_entries: Upper bound on stored entries, oldest evicted first
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds == 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value or compute, store and return it.

        The loader runs outside the lock; two concurrent misses may both
        load, and the later write wins.
        """
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: Tuple) -> None:
        """Drop every tuple key that starts with ``prefix``."""
        size = len(prefix)
        with self._lock:
            stale = [
                key for key in self._entries
                if isinstance(key, tuple) and key[:size] == prefix
            ]
            for key in stale:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
