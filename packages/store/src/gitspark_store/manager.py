"""Two-tier cache manager for Azure DevOps data.

Reads try memory first, then disk; a disk hit is promoted into memory. Writes
go to both tiers with independent TTLs. Read failures degrade to a miss and
are only counted; write failures propagate to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from gitspark_core.config import CacheConfig
from gitspark_core.errors import CacheError, GitSparkError
from gitspark_core.models import ProcessedRecord, PullRequestRecord
from gitspark_core.utils.dates import utcnow

from gitspark_store.base import BaseCache
from gitspark_store.file import FileCache
from gitspark_store.keys import processed_collection_key, pull_request_key
from gitspark_store.memory import MemoryCache
from gitspark_store.models import CacheCleanupResult, CacheManagerStats, CacheReport, FileCacheStats

logger = logging.getLogger(__name__)

PROMOTION_TTL = 30 * 60
DEFAULT_MEMORY_TTL = 30 * 60
PULL_REQUEST_MEMORY_TTL = 60 * 60
PULL_REQUEST_FILE_TTL = 24 * 60 * 60
PROCESSED_MEMORY_TTL = 30 * 60
PROCESSED_FILE_TTL = 2 * 60 * 60
BACKGROUND_CLEANUP_INTERVAL = 30 * 60


def resolve_cache_directory(config: CacheConfig, repo_path: str | Path) -> Path:
    directory = Path(config.directory).expanduser()
    return directory if directory.is_absolute() else Path(repo_path) / directory


class CacheManager:
    def __init__(
        self,
        config: CacheConfig,
        repo_path: str | Path = ".",
        memory: BaseCache | None = None,
        file: BaseCache | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.config = config
        self.enabled = config.enabled
        self.memory = memory or MemoryCache(default_ttl=DEFAULT_MEMORY_TTL)
        self.file = file or FileCache(
            resolve_cache_directory(config, repo_path),
            max_size_mb=config.max_size_mb,
            default_ttl=config.ttl_ms / 1000,
        )
        self.stats = CacheManagerStats()
        self._timer = timer
        self._background: BackgroundCleanup | None = None

        logger.info(
            "Cache manager initialized: enabled=%s dir=%s max=%sMB ttl=%ss incremental=%s",
            self.enabled,
            getattr(self.file, "directory", "-"),
            config.max_size_mb,
            config.ttl_ms / 1000,
            config.incremental,
        )
        if self.enabled and config.background_cleanup:
            self.start_background_cleanup()

    # ------------------------------------------------------------------ #
    # Generic operations                                                   #
    # ------------------------------------------------------------------ #

    def get(self, key: str) -> Any | None:
        """Return the cached value or None. Never raises on store failures."""
        if not self.enabled:
            self.stats.misses.total += 1
            return None

        started = self._timer()
        try:
            value = self.memory.get(key)
        except (GitSparkError, OSError, ValueError) as e:
            self._record_read_error("memory", key, e)
            value = None
        if value is not None:
            self.stats.hits.memory += 1
            self.stats.hits.total += 1
            self._record_response_time("memory", started)
            logger.debug("Cache hit (memory): %s", key)
            return value
        self.stats.misses.memory += 1

        try:
            value = self.file.get(key)
        except (GitSparkError, OSError, ValueError) as e:
            self._record_read_error("file", key, e)
            value = None
        if value is not None:
            self.stats.hits.file += 1
            self.stats.hits.total += 1
            self._record_response_time("file", started)
            self.memory.set(key, value, PROMOTION_TTL)
            self.stats.writes.memory += 1
            logger.debug("Cache hit (file, promoted to memory): %s", key)
            return value
        self.stats.misses.file += 1

        self.stats.misses.total += 1
        logger.debug("Cache miss: %s", key)
        return None

    def set(self, key: str, value: Any, memory_ttl: float | None = None, file_ttl: float | None = None) -> None:
        """Write to both tiers. Raises CacheError when either write fails."""
        if not self.enabled:
            return
        memory_ttl = memory_ttl or DEFAULT_MEMORY_TTL
        file_ttl = file_ttl or self.config.ttl_ms / 1000

        tier = "memory"
        try:
            self.memory.set(key, value, memory_ttl)
            self.stats.writes.memory += 1
            tier = "file"
            self.file.set(key, value, file_ttl)
            self.stats.writes.file += 1
        except (CacheError, OSError, TypeError, ValueError) as e:
            self.stats.errors.total += 1
            setattr(self.stats.errors, tier, getattr(self.stats.errors, tier) + 1)
            logger.error("Cache write failed for %s (%s tier): %s", key, tier, e)
            if isinstance(e, CacheError):
                raise
            raise CacheError(f"Cache write failed for {key}: {e}", key=key, tier=tier) from e
        self.stats.writes.total += 1

    def has(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return self.memory.has(key) or self.file.has(key)
        except (GitSparkError, OSError, ValueError) as e:
            logger.debug("Cache has() failed for %s: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        memory_deleted = self.memory.delete(key)
        file_deleted = self.file.delete(key)
        logger.debug("Cache delete %s: memory=%s file=%s", key, memory_deleted, file_deleted)
        return memory_deleted or file_deleted

    def update(self, key: str, updater: Callable[[Any | None], Any]) -> None:
        if not self.enabled:
            return
        current = self.get(key)
        self.set(key, updater(current))

    def clear(self) -> None:
        """Empty both tiers and reset the counters."""
        self.memory.clear()
        self.file.clear()
        self.stats = CacheManagerStats()
        logger.info("Cache cleared (all tiers)")

    def cleanup(self) -> CacheCleanupResult:
        if not self.enabled:
            return CacheCleanupResult()
        result = CacheCleanupResult(
            memory_entries_removed=self.memory.cleanup(),
            file_cleanup=self.file.cleanup(),
        )
        logger.info(
            "Cache cleanup: %d memory entries, %d files removed",
            result.memory_entries_removed,
            result.file_cleanup.total_files_deleted,
        )
        return result

    def get_stats(self) -> CacheReport:
        file_stats = self.file.get_stats() if self.enabled else FileCacheStats(max_size_mb=self.config.max_size_mb)
        return CacheReport(
            enabled=self.enabled,
            manager=self.stats,
            memory=self.memory.get_stats(),
            file=file_stats,
        )

    # ------------------------------------------------------------------ #
    # Azure DevOps accessors                                               #
    # ------------------------------------------------------------------ #

    def cache_pull_request(self, pr: PullRequestRecord) -> None:
        self.set(
            pull_request_key(pr.id),
            pr.to_api(),
            memory_ttl=PULL_REQUEST_MEMORY_TTL,
            file_ttl=PULL_REQUEST_FILE_TTL,
        )

    def get_cached_pull_request(self, pr_id: int) -> PullRequestRecord | None:
        payload = self.get(pull_request_key(pr_id))
        if payload is None:
            return None
        try:
            return PullRequestRecord.from_api(payload)
        except (KeyError, TypeError, ValueError) as e:
            self._record_read_error("file", pull_request_key(pr_id), e)
            return None

    def cache_processed_pr_data(self, collection: str, records: list[ProcessedRecord]) -> None:
        self.set(
            processed_collection_key(collection),
            [r.to_dict() for r in records],
            memory_ttl=PROCESSED_MEMORY_TTL,
            file_ttl=PROCESSED_FILE_TTL,
        )

    def get_cached_processed_pr_data(self, collection: str) -> list[ProcessedRecord] | None:
        """Return the cached collection, or None when absent or unreadable.

        A collection written with another schema version reads as a miss.
        """
        key = processed_collection_key(collection)
        payload = self.get(key)
        if payload is None:
            return None
        try:
            return [ProcessedRecord.from_dict(item) for item in payload]
        except (KeyError, TypeError, ValueError) as e:
            self._record_read_error("file", key, e)
            return None

    def update_pull_requests_incremental(
        self,
        collection: str,
        new_prs: list[PullRequestRecord],
        existing: list[ProcessedRecord] | None = None,
    ) -> list[ProcessedRecord] | None:
        """Fold freshly fetched PRs into the cached processed collection.

        Every PR is cached individually. With incremental mode on, processed
        records whose PR id matches are updated in place (new PR payload,
        refreshed ``processed_at``) and the merged collection is written back
        and returned. Returns None when incremental mode is off or there is
        no collection to merge into.
        """
        for pr in new_prs:
            self.cache_pull_request(pr)
        if not self.config.incremental:
            return None

        records = existing if existing is not None else self.get_cached_processed_pr_data(collection)
        if not records:
            return None

        by_id = {record.pull_request.id: record for record in records}
        now = utcnow()
        updated = 0
        for pr in new_prs:
            record = by_id.get(pr.id)
            if record is None:
                continue
            record.pull_request = pr
            record.metadata.processed_at = now
            updated += 1

        if updated:
            self.cache_processed_pr_data(collection, records)
        logger.debug("Incremental update of %s: %d/%d records refreshed", collection, updated, len(records))
        return records

    # ------------------------------------------------------------------ #
    # Background cleanup                                                   #
    # ------------------------------------------------------------------ #

    def start_background_cleanup(self, interval: float = BACKGROUND_CLEANUP_INTERVAL) -> None:
        if self._background is not None:
            return
        self._background = BackgroundCleanup(self, interval)
        self._background.start()

    def stop_background_cleanup(self) -> None:
        if self._background is None:
            return
        self._background.stop()
        self._background = None

    def close(self) -> None:
        self.stop_background_cleanup()
        self.memory.close()
        self.file.close()

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _record_read_error(self, tier: str, key: str, error: Exception) -> None:
        self.stats.errors.total += 1
        setattr(self.stats.errors, tier, getattr(self.stats.errors, tier) + 1)
        logger.warning("Cache read failed for %s (%s tier), treating as a miss: %s", key, tier, error)

    def _record_response_time(self, tier: str, started: float) -> None:
        elapsed_ms = (self._timer() - started) * 1000
        count = getattr(self.stats.hits, tier)
        attr = f"average_{tier}_response_ms"
        current = getattr(self.stats, attr)
        setattr(self.stats, attr, (current * (count - 1) + elapsed_ms) / count)


class BackgroundCleanup:
    """Periodic ``CacheManager.cleanup()`` on a daemon thread.

    ``stop()`` wakes the thread immediately and joins it.
    """

    def __init__(self, manager: CacheManager, interval: float = BACKGROUND_CLEANUP_INTERVAL):
        self.manager = manager
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="gitspark-cache-cleanup", daemon=True)
        self._thread.start()
        logger.debug("Background cache cleanup started (every %ss)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("Background cache cleanup stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.manager.cleanup()
            except (GitSparkError, OSError, ValueError) as e:
                logger.warning("Background cache cleanup failed: %s", e)
