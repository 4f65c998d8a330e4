"""In-process cache tier with TTL expiry and least-recently-accessed eviction."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

from gitspark_store.base import BaseCache, payload_size
from gitspark_store.models import CacheEntry, MemoryCacheStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 30 * 60


class MemoryCache(BaseCache):
    """Bounded dict of CacheEntry objects.

    Access order lives in a separate ordered map that every get() and set()
    moves to the end, so the least-recently-accessed key is always first and
    eviction is O(1). Expired entries are dropped lazily on access and eagerly
    by cleanup().
    """

    name = "memory"

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._access_order: OrderedDict[str, float] = OrderedDict()
        # Background cleanup may sweep while the fetch pipeline reads.
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            now = self._clock()
            entry.touch(now)
            self._access_order[key] = now
            self._access_order.move_to_end(key)
            return entry.data

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_least_recently_used()
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                data=value,
                created_at=now,
                expires_at=now + ttl,
                last_accessed_at=now,
                data_size=payload_size(value),
            )
            self._access_order[key] = now
            self._access_order.move_to_end(key)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            self._access_order.pop(key, None)
            deleted = self._entries.pop(key, None) is not None
        if deleted:
            logger.debug("Memory cache entry deleted: %s", key)
        return deleted

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self._access_order.clear()
        logger.info("Memory cache cleared (%d entries)", size)

    def cleanup(self) -> int:
        """Remove every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
                self._access_order.pop(key, None)
        if expired:
            logger.debug("Memory cache cleanup removed %d entries (%d left)", len(expired), len(self._entries))
        return len(expired)

    def remaining_ttl(self, key: str) -> float | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry.remaining_ttl(self._clock()) if entry else None

    def get_stats(self) -> MemoryCacheStats:
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
        if not entries:
            return MemoryCacheStats(max_entries=self.max_entries)
        created = [e.created_at for e in entries]
        return MemoryCacheStats(
            total_entries=len(entries),
            expired_entries=sum(1 for e in entries if e.is_expired(now)),
            total_data_size_bytes=sum(e.data_size for e in entries),
            oldest_entry_age=now - min(created),
            newest_entry_age=now - max(created),
            max_entries=self.max_entries,
        )

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug("Memory cache entry expired: %s", key)
            del self._entries[key]
            self._access_order.pop(key, None)
            return None
        return entry

    def _evict_least_recently_used(self) -> None:
        key, accessed_at = self._access_order.popitem(last=False)
        entry = self._entries.pop(key, None)
        logger.debug(
            "Memory cache LRU eviction: %s (idle %.1fs, %d bytes)",
            key,
            self._clock() - accessed_at,
            entry.data_size if entry else 0,
        )
