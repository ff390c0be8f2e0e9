"""Short-lived in-process cache.

Used by the sequence counter to remember which projects had their counter
verified recently. Entries carry an absolute expiry; expired entries read
as missing and are dropped on the next read.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


@dataclass
class CacheStats:
    """Cache statistics."""

    total_entries: int
    active_entries: int
    expired_entries: int
    ttl_seconds: float


class TTLCache(Generic[V]):
    """Thread-safe key/value cache with a fixed time-to-live.

    Args:
        ttl_seconds: Lifetime of each entry; 0 disables caching
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            active = sum(1 for _, exp in self._entries.values() if exp > now)
        stats = CacheStats(
            total_entries=total,
            active_entries=active,
            expired_entries=total - active,
            ttl_seconds=self.ttl_seconds,
        )
        return stats.__dict__.copy()
