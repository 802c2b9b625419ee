"""MetroSafe Backend — In-memory cache with TTL"""

import time
import logging
from typing import Any, Callable, Optional

from config import GEOCODE_CACHE_TTL, SUGGEST_CACHE_TTL, AREA_CACHE_TTL

logger = logging.getLogger("metrosafe.cache")


class TTLCache:
    """In-memory cache with per-key TTL and max-size eviction.

    Only successful lookups are stored by callers; a miss is ``None``.
    """

    def __init__(self, default_ttl: int = 3600, max_size: int = 500,
                 clock: Callable[[], float] = time.monotonic):
        self._store: dict[str, tuple[Any, float]] = {}
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock

    def __len__(self) -> int:
        return len(self._store)

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        if len(self._store) >= self._max_size and key not in self._store:
            self.evict_expired()
            # Still full: drop earliest-expiring entries
            while len(self._store) >= self._max_size:
                oldest_key = min(self._store, key=lambda k: self._store[k][1])
                del self._store[oldest_key]
                logger.debug(f"Evicted {oldest_key} (cache full)")
        expires_at = self._clock() + (ttl or self._default_ttl)
        self._store[key] = (value, expires_at)

    def clear(self):
        self._store.clear()

    def evict_expired(self):
        now = self._clock()
        expired = [k for k, (_, exp) in self._store.items() if now > exp]
        for k in expired:
            del self._store[k]


# Shared caches with different TTLs
geocode_cache = TTLCache(default_ttl=GEOCODE_CACHE_TTL)   # resolved locations
suggest_cache = TTLCache(default_ttl=SUGGEST_CACHE_TTL)   # autocomplete suggestions
area_cache = TTLCache(default_ttl=AREA_CACHE_TTL, max_size=100)  # deduplicated area records
