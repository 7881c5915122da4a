"""In-process TTL cache owned and injected by its callers.

Each instance keeps a value map plus an expiry map, bounded to max_entries
with least-recently-used eviction once expired entries are gone. There is no module-level
instance: the application creates one at startup and passes it to the
components that need it, and tests create their own.

Usage:
    cache = TTLCache(default_ttl=300)
    value = await cache.get_or_load("cdm:category:sales", load_sales_entities)
"""

import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable, Optional, TypeVar

from utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


class TTLCache:
    """Key/value cache with per-entry expiry.

    Args:
        default_ttl: Seconds an entry lives when set() is not given a ttl
        max_entries: Upper bound on stored entries; the least recently used
            entry is evicted when a set() would exceed it
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        # Least recently used first
        self._values: OrderedDict[Hashable, Any] = OrderedDict()
        self._expires_at: dict[Hashable, float] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _is_expired(self, key: Hashable, now: float) -> bool:
        return self._expires_at.get(key, 0.0) <= now

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        """Return the cached value, or default when missing or expired."""
        now = self._clock()
        if key in self._values and not self._is_expired(key, now):
            self.hits += 1
            self._values.move_to_end(key)
            return self._values[key]

        if key in self._values:
            self.delete(key)
        self.misses += 1
        return default

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value; a ttl of 0 or less stores nothing."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            self.delete(key)
            return
        self._values[key] = value
        self._values.move_to_end(key)
        self._expires_at[key] = self._clock() + ttl
        if len(self._values) > self.max_entries:
            self._make_room()

    def _make_room(self) -> None:
        self.purge_expired()
        while len(self._values) > self.max_entries:
            oldest = next(iter(self._values))
            self.delete(oldest)
            self.evictions += 1

    def delete(self, key: Hashable) -> bool:
        existed = key in self._values
        self._values.pop(key, None)
        self._expires_at.pop(key, None)
        return existed

    def clear(self) -> None:
        self._values.clear()
        self._expires_at.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key in self._values if self._is_expired(key, now)]
        for key in expired:
            self.delete(key)
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Return the cached value or await loader() and cache its result.

        None results are not cached.
        """
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        value = await loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def __contains__(self, key: Hashable) -> bool:
        return key in self._values and not self._is_expired(key, self._clock())

    def __len__(self) -> int:
        return len(self._values)

    def get_stats(self) -> dict:
        """Get cache statistics."""
        return {
            "entries": len(self._values),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
        }
