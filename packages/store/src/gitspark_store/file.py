"""Persistent cache tier backed by sharded JSON files.

Layout: ``{directory}/{sha256(key)[:2]}/{sha256(key)}.json``. Each file holds
one serialized CacheEntry. Writes go to a temp file in the shard directory and
are moved into place with ``os.replace``, so a reader never sees a partial
entry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import random
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from gitspark_core.errors import CacheError

from gitspark_store.base import BaseCache, payload_size
from gitspark_store.models import CacheEntry, FileCacheStats, FileCleanupResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_MB = 100
DEFAULT_TTL_SECONDS = 60 * 60
CLEANUP_PROBABILITY = 0.01
# Size-driven cleanup stops once the cache is back under this share of the limit.
CLEANUP_TARGET_RATIO = 0.8

_MB = 1024 * 1024


@dataclass
class _CacheFile:
    path: Path
    size: int


class FileCache(BaseCache):
    name = "file"

    def __init__(
        self,
        directory: str | Path,
        max_size_mb: float = DEFAULT_MAX_SIZE_MB,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        cleanup_probability: float = CLEANUP_PROBABILITY,
        rng: Callable[[], float] = random.random,
    ):
        self.directory = Path(directory)
        self.max_size_mb = max_size_mb
        self.default_ttl = default_ttl
        self.cleanup_probability = cleanup_probability
        self._clock = clock
        self._rng = rng
        self._lock = threading.RLock()

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * _MB)

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / digest[:2] / f"{digest}.json"

    # ------------------------------------------------------------------ #
    # BaseCache                                                            #
    # ------------------------------------------------------------------ #

    def get(self, key: str) -> Any | None:
        """Return the cached value, refreshing its access information.

        Expired and corrupt files are deleted and read as a miss. Raises
        CacheError when the file exists but cannot be read or rewritten.
        """
        with self._lock:
            path = self.path_for(key)
            entry = self._load(path, key)
            if entry is None:
                return None
            entry.touch(self._clock())
            self._write(path, entry)
            return entry.data

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Write ``value`` to disk. Raises CacheError when the write fails."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        with self._lock:
            now = self._clock()
            entry = CacheEntry(
                key=key,
                data=value,
                created_at=now,
                expires_at=now + ttl,
                last_accessed_at=now,
                data_size=payload_size(value),
            )
            self._write(self.path_for(key), entry)
            logger.debug("File cache set: %s (%d bytes, ttl %ss)", key, entry.data_size, ttl)

            if self._rng() < self.cleanup_probability:
                self.cleanup()

    def has(self, key: str) -> bool:
        with self._lock:
            return self._load(self.path_for(key), key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            path = self.path_for(key)
            if not path.exists():
                return False
            self._unlink(path)
        logger.debug("File cache entry deleted: %s", key)
        return True

    def clear(self) -> None:
        with self._lock:
            files = self._scan()
            for cache_file in files:
                self._unlink(cache_file.path)
        logger.info("File cache cleared (%d files)", len(files))

    def remaining_ttl(self, key: str) -> float | None:
        with self._lock:
            entry = self._load(self.path_for(key), key)
            return entry.remaining_ttl(self._clock()) if entry else None

    def cleanup(self) -> FileCleanupResult:
        """Delete expired or corrupt files, then enforce the size limit.

        When the remaining files exceed ``max_size_mb`` the least recently
        accessed are deleted until the total is at most 80% of the limit.
        """
        result = FileCleanupResult()
        with self._lock:
            now = self._clock()
            survivors: list[tuple[_CacheFile, float]] = []
            for cache_file in self._scan():
                entry = self._read_entry(cache_file.path)
                if entry is None or entry.is_expired(now):
                    self._unlink(cache_file.path)
                    result.expired_files_deleted += 1
                    result.bytes_freed += cache_file.size
                else:
                    survivors.append((cache_file, entry.last_accessed_at))

            total = sum(f.size for f, _ in survivors)
            if total > self.max_size_bytes:
                target = self.max_size_bytes * CLEANUP_TARGET_RATIO
                for cache_file, _ in sorted(survivors, key=lambda item: item[1]):
                    if total <= target:
                        break
                    self._unlink(cache_file.path)
                    total -= cache_file.size
                    result.size_constraint_files_deleted += 1
                    result.bytes_freed += cache_file.size

        if result.total_files_deleted:
            logger.info(
                "File cache cleanup: %d expired, %d evicted for size, %d bytes freed",
                result.expired_files_deleted,
                result.size_constraint_files_deleted,
                result.bytes_freed,
            )
        return result

    def get_stats(self) -> FileCacheStats:
        """Scan the cache directory and summarize what is on disk."""
        stats = FileCacheStats(max_size_mb=self.max_size_mb)
        with self._lock:
            now = self._clock()
            created = []
            for cache_file in self._scan():
                stats.total_files += 1
                stats.total_size_bytes += cache_file.size
                entry = self._read_entry(cache_file.path)
                if entry is None:
                    stats.expired_files += 1
                    continue
                stats.total_data_size_bytes += entry.data_size
                stats.total_access_count += entry.access_count
                if entry.is_expired(now):
                    stats.expired_files += 1
                created.append(entry.created_at)
        if created:
            stats.oldest_file_age = now - min(created)
            stats.newest_file_age = now - max(created)
        return stats

    # ------------------------------------------------------------------ #
    # Disk helpers                                                         #
    # ------------------------------------------------------------------ #

    def _load(self, path: Path, key: str) -> CacheEntry | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            raw = ""
        except OSError as e:
            raise CacheError(f"Could not read cache file {path}: {e}", key=key, tier=self.name) from e

        entry = _parse_entry(raw)
        if entry is None or entry.key != key:
            logger.warning("Removing corrupt cache file %s", path)
            self._unlink(path)
            return None
        if entry.is_expired(self._clock()):
            logger.debug("File cache entry expired: %s", key)
            self._unlink(path)
            return None
        return entry

    def _read_entry(self, path: Path) -> CacheEntry | None:
        try:
            with open(path, encoding="utf-8") as f:
                return _parse_entry(f.read())
        except (OSError, UnicodeDecodeError):
            return None

    def _write(self, path: Path, entry: CacheEntry) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(entry.to_dict(), f, default=str)
                os.replace(tmp_path, path)
            except Exception:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                raise
        except (OSError, TypeError, ValueError) as e:
            raise CacheError(f"Could not write cache file {path}: {e}", key=entry.key, tier=self.name) from e

    def _scan(self) -> list[_CacheFile]:
        if not self.directory.is_dir():
            return []
        files = []
        for path in self.directory.glob("*/*.json"):
            try:
                files.append(_CacheFile(path=path, size=path.stat().st_size))
            except FileNotFoundError:
                continue
        return files

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def _parse_entry(raw: str) -> CacheEntry | None:
    try:
        return CacheEntry.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError):
        return None
