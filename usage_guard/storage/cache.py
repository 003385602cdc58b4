"""
Short-TTL read cache for usage counters.

Keeps the last-known counter per (identity, day) to spare durable-store reads.
"""

import threading
from datetime import date
from typing import Dict, Optional, Tuple

from cachetools import TTLCache

from usage_guard.core.clock import SystemClock
from .models import UsageCounter

CacheKey = Tuple[str, date]

DEFAULT_MAX_ENTRIES = 10_000


class UsageCache:
    """Thread-safe, size-bounded TTL cache keyed by (identity, day).

    Expiry and eviction are handled by ``cachetools.TTLCache`` driven by the
    injected clock. Each key also carries a generation number bumped by
    ``invalidate``; a reader that fetched from the durable store before a
    write committed cannot put its stale value back, because ``put`` refuses
    when the generation moved.
    """

    def __init__(self, ttl_seconds: float = 60.0, maxsize: int = DEFAULT_MAX_ENTRIES, clock=None):
        """Initialize the cache.

        Args:
            ttl_seconds: Seconds an entry is trusted after it is stored
            maxsize: Maximum number of cached counters
            clock: Object with ``now()`` returning an aware datetime
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._entries: TTLCache = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=lambda: self._clock.now().timestamp()
        )
        self._generations: Dict[CacheKey, int] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[UsageCounter]:
        """Return the cached counter, or None if missing or expired."""
        with self._lock:
            return self._entries.get(key)

    def generation(self, key: CacheKey) -> int:
        """Current write generation of ``key``; pass it back to ``put``."""
        with self._lock:
            return self._generations.get(key, 0)

    def put(self, key: CacheKey, counter: UsageCounter, generation: int) -> bool:
        """Cache ``counter`` unless a write for ``key`` happened since ``generation``.

        Returns:
            True if the entry was stored
        """
        with self._lock:
            if self._generations.get(key, 0) != generation:
                return False
            self._entries[key] = counter
            return True

    def invalidate(self, key: CacheKey) -> None:
        """Delete the entry for ``key`` and bump its generation."""
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for key in self._generations:
                self._generations[key] += 1

    def prune_before(self, cutoff: date) -> None:
        """Forget entries and generations for days before ``cutoff``."""
        with self._lock:
            for key in [k for k in self._generations if k[1] < cutoff]:
                del self._generations[key]
            for key in [k for k in self._entries if k[1] < cutoff]:
                self._entries.pop(key, None)
            self._entries.expire()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
