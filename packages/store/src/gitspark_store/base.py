"""Abstract cache tier interface.

MemoryCache and FileCache both implement BaseCache, and CacheManager talks to
them only through it, so a tier can be swapped (or faked in tests) without
touching the manager.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable


class BaseCache(ABC):
    """A key/value tier with per-entry TTLs in seconds.

    Payloads must be JSON-serializable; both tiers size entries by their JSON
    encoding.
    """

    name: str = "cache"

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the value for ``key`` or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value``. ``ttl`` defaults to the tier's default TTL."""

    @abstractmethod
    def has(self, key: str) -> bool:
        """Like get() but without refreshing access information."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; True if something was removed."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def cleanup(self):
        """Remove expired entries (and, for bounded tiers, enforce limits)."""

    @abstractmethod
    def get_stats(self):
        ...

    @abstractmethod
    def remaining_ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires, or None when absent."""

    def update(self, key: str, updater: Callable[[Any | None], Any]) -> None:
        """Replace the value of ``key`` with ``updater(current)``.

        An existing entry keeps its remaining TTL; a new one gets the default.
        """
        current = self.get(key)
        remaining = self.remaining_ttl(key) if current is not None else None
        value = updater(current)
        self.set(key, value, remaining if remaining else None)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        results = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                results[key] = value
        return results

    def set_many(self, items: Iterable[tuple[str, Any, float | None]]) -> None:
        for key, value, ttl in items:
            self.set(key, value, ttl)

    def close(self) -> None:
        """Release resources held by the tier. No-op by default."""


def payload_size(value: Any) -> int:
    return len(json.dumps(value, default=str))
