"""Cache entry and statistics models.

Timestamps are epoch seconds in memory and epoch milliseconds on disk, so a
cache file reads the same as one written by other Azure DevOps tooling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Bump when the on-disk entry layout changes; other versions read as corrupt.
ENTRY_SCHEMA_VERSION = 1

_MB = 1024 * 1024


@dataclass
class CacheEntry:
    """One cached payload. ``expires_at`` is always later than ``created_at``."""

    key: str
    data: Any
    created_at: float
    expires_at: float
    last_accessed_at: float
    access_count: int = 1
    data_size: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def touch(self, now: float) -> None:
        self.last_accessed_at = now
        self.access_count += 1

    def to_dict(self) -> dict:
        return {
            "schemaVersion": ENTRY_SCHEMA_VERSION,
            "key": self.key,
            "data": self.data,
            "createdAt": int(self.created_at * 1000),
            "expiresAt": int(self.expires_at * 1000),
            "lastAccessedAt": int(self.last_accessed_at * 1000),
            "accessCount": self.access_count,
            "dataSize": self.data_size,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CacheEntry:
        """Raises ValueError for another schema version, KeyError for missing fields."""
        if d.get("schemaVersion") != ENTRY_SCHEMA_VERSION:
            raise ValueError(f"unsupported cache entry schema version: {d.get('schemaVersion')!r}")
        return cls(
            key=d["key"],
            data=d["data"],
            created_at=d["createdAt"] / 1000,
            expires_at=d["expiresAt"] / 1000,
            last_accessed_at=d["lastAccessedAt"] / 1000,
            access_count=int(d["accessCount"]),
            data_size=int(d.get("dataSize", 0)),
        )


@dataclass
class MemoryCacheStats:
    total_entries: int = 0
    expired_entries: int = 0
    total_data_size_bytes: int = 0
    oldest_entry_age: float = 0.0
    newest_entry_age: float = 0.0
    max_entries: int = 0

    @property
    def active_entries(self) -> int:
        return self.total_entries - self.expired_entries

    @property
    def average_data_size_bytes(self) -> int:
        return round(self.total_data_size_bytes / self.total_entries) if self.total_entries else 0

    @property
    def utilization_percentage(self) -> int:
        return round(self.total_entries / self.max_entries * 100) if self.max_entries else 0

    def to_dict(self) -> dict:
        return {
            "totalEntries": self.total_entries,
            "expiredEntries": self.expired_entries,
            "activeEntries": self.active_entries,
            "totalDataSizeBytes": self.total_data_size_bytes,
            "averageDataSizeBytes": self.average_data_size_bytes,
            "oldestEntryAgeSeconds": round(self.oldest_entry_age, 3),
            "newestEntryAgeSeconds": round(self.newest_entry_age, 3),
            "maxEntries": self.max_entries,
            "utilizationPercentage": self.utilization_percentage,
        }


@dataclass
class FileCacheStats:
    total_files: int = 0
    expired_files: int = 0
    total_size_bytes: int = 0
    total_data_size_bytes: int = 0
    oldest_file_age: float = 0.0
    newest_file_age: float = 0.0
    total_access_count: int = 0
    max_size_mb: float = 0.0

    @property
    def active_files(self) -> int:
        return self.total_files - self.expired_files

    @property
    def total_size_mb(self) -> float:
        return round(self.total_size_bytes / _MB, 2)

    @property
    def average_file_size_bytes(self) -> int:
        return round(self.total_size_bytes / self.total_files) if self.total_files else 0

    @property
    def utilization_percentage(self) -> int:
        return round(self.total_size_bytes / _MB / self.max_size_mb * 100) if self.max_size_mb else 0

    def to_dict(self) -> dict:
        return {
            "totalFiles": self.total_files,
            "expiredFiles": self.expired_files,
            "activeFiles": self.active_files,
            "totalSizeBytes": self.total_size_bytes,
            "totalDataSizeBytes": self.total_data_size_bytes,
            "totalSizeMB": self.total_size_mb,
            "averageFileSizeBytes": self.average_file_size_bytes,
            "oldestFileAgeSeconds": round(self.oldest_file_age, 3),
            "newestFileAgeSeconds": round(self.newest_file_age, 3),
            "totalAccessCount": self.total_access_count,
            "maxSizeMB": self.max_size_mb,
            "utilizationPercentage": self.utilization_percentage,
        }


@dataclass
class FileCleanupResult:
    expired_files_deleted: int = 0
    size_constraint_files_deleted: int = 0
    bytes_freed: int = 0

    @property
    def total_files_deleted(self) -> int:
        return self.expired_files_deleted + self.size_constraint_files_deleted

    def to_dict(self) -> dict:
        return {
            "expiredFilesDeleted": self.expired_files_deleted,
            "sizeConstraintFilesDeleted": self.size_constraint_files_deleted,
            "totalFilesDeleted": self.total_files_deleted,
            "bytesFreed": self.bytes_freed,
            "mbFreed": round(self.bytes_freed / _MB, 2),
        }


@dataclass
class CacheCleanupResult:
    memory_entries_removed: int = 0
    file_cleanup: FileCleanupResult = field(default_factory=FileCleanupResult)

    def to_dict(self) -> dict:
        return {"memoryEntriesRemoved": self.memory_entries_removed, "fileCleanup": self.file_cleanup.to_dict()}


@dataclass
class TierCounters:
    memory: int = 0
    file: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return {"memory": self.memory, "file": self.file, "total": self.total}


@dataclass
class CacheManagerStats:
    """Running counters kept by CacheManager. Reset only by ``clear()``."""

    hits: TierCounters = field(default_factory=TierCounters)
    misses: TierCounters = field(default_factory=TierCounters)
    writes: TierCounters = field(default_factory=TierCounters)
    errors: TierCounters = field(default_factory=TierCounters)
    # Moving averages in milliseconds over hits on each tier.
    average_memory_response_ms: float = 0.0
    average_file_response_ms: float = 0.0

    @property
    def total_requests(self) -> int:
        return self.hits.total + self.misses.total

    def hit_rate(self, tier: str = "total") -> float:
        if not self.total_requests:
            return 0.0
        return round(getattr(self.hits, tier) / self.total_requests, 2)

    def to_dict(self) -> dict:
        return {
            "hits": self.hits.to_dict(),
            "misses": self.misses.to_dict(),
            "writes": self.writes.to_dict(),
            "errors": self.errors.to_dict(),
            "hitRate": {
                "memory": self.hit_rate("memory"),
                "file": self.hit_rate("file"),
                "overall": self.hit_rate(),
            },
            "averageResponseTime": {
                "memory": round(self.average_memory_response_ms, 3),
                "file": round(self.average_file_response_ms, 3),
            },
        }


@dataclass
class CacheReport:
    """Manager counters combined with both tier snapshots."""

    enabled: bool
    manager: CacheManagerStats
    memory: MemoryCacheStats
    file: FileCacheStats

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "manager": self.manager.to_dict(),
            "memory": self.memory.to_dict(),
            "file": self.file.to_dict(),
            "performance": {
                "totalRequests": self.manager.total_requests,
                "hitRatePercentage": round(self.manager.hit_rate() * 100),
                "averageMemoryResponseTime": round(self.manager.average_memory_response_ms, 3),
                "averageFileResponseTime": round(self.manager.average_file_response_ms, 3),
                "memoryEfficiency": self.memory.utilization_percentage,
                "fileEfficiency": self.file.utilization_percentage,
            },
        }
