"""Pull request collection pipeline.

    initialize()
      → resolve configuration      (ConfigurationError)
      → cache manager
      → API client + connectivity check   (ConnectivityError)
      → record linker over the supplied commits
    collect_pull_request_data()
      → cached collection if every record is younger than the cache TTL
      → otherwise fetch, then per PR: link commits, compute metrics, cache the raw PR
      → cache the processed collection

A failure on one pull request is recorded as a PerItemError and the batch
continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from gitspark_core.ado.client import AzureDevOpsClient, PullRequestFilters
from gitspark_core.config import AzureDevOpsConfig, ConfigLayer, resolve_config
from gitspark_core.errors import (
    CacheError,
    CollectorStateError,
    ConnectivityError,
    PerItemError,
)
from gitspark_core.linking.linker import RecordLinker
from gitspark_core.metrics import KNOWN_LIMITATIONS, compute_metrics
from gitspark_core.models import (
    CommitRecord,
    ProcessedRecord,
    ProcessingMetadata,
    ProgressCallback,
    PullRequestRecord,
    PullRequestStatus,
)
from gitspark_core.utils.dates import utcnow

if TYPE_CHECKING:
    from gitspark_store.manager import CacheManager
    from gitspark_store.models import CacheCleanupResult, CacheReport

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10
DEFAULT_STATES = (PullRequestStatus.COMPLETED.value, PullRequestStatus.ACTIVE.value)


class CollectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FETCHING = "fetching"
    FAILED = "failed"


@dataclass
class CollectorOptions:
    since: datetime | None = None
    until: datetime | None = None
    days: int | None = None
    no_cache: bool = False
    config_path: str | None = None
    cli_layer: ConfigLayer | None = None
    states: tuple[str, ...] = DEFAULT_STATES
    detect_remote: bool = True


@dataclass
class CollectionResult:
    records: list[ProcessedRecord]
    failures: list[PerItemError] = field(default_factory=list)
    from_cache: bool = False


def _default_cache_factory(config: AzureDevOpsConfig, repo_path: Path) -> CacheManager:
    from gitspark_store.manager import CacheManager

    return CacheManager(config.cache, repo_path)


class PullRequestCollector:
    def __init__(
        self,
        repo_path: str | Path,
        commits: list[CommitRecord],
        options: CollectorOptions | None = None,
        progress: ProgressCallback | None = None,
        client_factory: Callable[..., AzureDevOpsClient] = AzureDevOpsClient,
        cache_factory: Callable[[AzureDevOpsConfig, Path], CacheManager] = _default_cache_factory,
        config: AzureDevOpsConfig | None = None,
    ):
        self.repo_path = Path(repo_path)
        self.commits = commits
        self.options = options or CollectorOptions()
        self.progress = progress
        self._client_factory = client_factory
        self._cache_factory = cache_factory
        self._preset_config = config

        self.state = CollectorState.UNINITIALIZED
        self.config: AzureDevOpsConfig | None = None
        self.client: AzureDevOpsClient | None = None
        self.cache: CacheManager | None = None
        self.linker: RecordLinker | None = None
        self.failures: list[PerItemError] = []

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def initialize(self) -> None:
        """Build every component or fail without exposing a partial collector.

        Raises ConfigurationError or ConnectivityError; the state becomes
        ``failed`` and the collector cannot be used.
        """
        self.state = CollectorState.INITIALIZING
        cache = None
        try:
            self._report("Resolving Azure DevOps configuration", 1, 4)
            config = self._preset_config or resolve_config(
                self.repo_path,
                cli_layer=self.options.cli_layer,
                config_path=self.options.config_path,
                detect_remote=self.options.detect_remote,
            )

            self._report("Initializing cache system", 2, 4)
            cache = self._cache_factory(config, self.repo_path)

            self._report("Initializing API client", 3, 4)
            client = self._client_factory(config, progress=self.progress)
            connection = client.test_connection()
            if not connection.success:
                raise ConnectivityError(
                    f"Azure DevOps connectivity test failed for {config.organization}/{config.project}: "
                    f"{connection.error}"
                )
            logger.info("Azure DevOps connectivity verified in %.0f ms", connection.response_time_ms)

            self._report("Initializing commit linking", 4, 4)
            linker = RecordLinker(self.commits)
        except Exception as e:
            self.state = CollectorState.FAILED
            if cache is not None:
                cache.close()
            logger.error("Azure DevOps collector initialization failed: %s", e)
            raise

        self.config, self.cache, self.client, self.linker = config, cache, client, linker
        self.state = CollectorState.READY
        logger.info("Azure DevOps collector ready (%d commits)", len(self.commits))

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()

    def __enter__(self) -> PullRequestCollector:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Collection                                                           #
    # ------------------------------------------------------------------ #

    def collect_pull_request_data(self) -> CollectionResult:
        """Return processed pull requests from cache or a fresh fetch.

        Raises CollectorStateError before a successful initialize(), and
        ClientError when the fetch fails after retries.
        """
        if self.state is not CollectorState.READY:
            raise CollectorStateError(f"collector is {self.state.value}; call initialize() first")

        self.state = CollectorState.FETCHING
        try:
            return self._collect()
        finally:
            self.state = CollectorState.READY

    def _collect(self) -> CollectionResult:
        started = utcnow()
        self.failures = []
        collection = self.config.cache_key

        self._report("Checking cache for existing data", 0, 5)
        if not self.options.no_cache:
            cached = self.cache.get_cached_processed_pr_data(collection)
            if cached and self._cache_is_fresh(cached):
                logger.info("Using %d cached pull requests for %s", len(cached), collection)
                for record in cached:
                    record.metadata.cache_hit = True
                    record.metadata.cache_source = "cache"
                return CollectionResult(records=cached, from_cache=True)

        self._report("Fetching pull requests from Azure DevOps API", 1, 5)
        filters = self.build_filters()
        pull_requests = self.client.fetch_pull_requests(filters)
        logger.info("Fetched %d pull requests for %s", len(pull_requests), collection)

        self._report("Processing pull request data", 2, 5)
        records: list[ProcessedRecord] = []
        total = len(pull_requests)
        for index, pr in enumerate(pull_requests):
            if index % PROGRESS_EVERY == 0:
                self._report(f"Processing PR {index + 1}/{total}", index, total)
            try:
                record = self.process_pull_request(pr)
                self.cache.cache_pull_request(pr)
            except Exception as e:  # recorded per item, never raised
                failure = PerItemError(pr.id, pr.title, e)
                self.failures.append(failure)
                logger.warning("Failed to process pull request: %s", failure)
                continue
            records.append(record)

        self._report("Caching processed data", 4, 5)
        try:
            self.cache.cache_processed_pr_data(collection, records)
        except CacheError as e:
            logger.error("Could not cache processed pull requests for %s: %s", collection, e)
            raise

        self._report("Azure DevOps data collection complete", 5, 5)
        elapsed = (utcnow() - started).total_seconds()
        logger.info(
            "Processed %d/%d pull requests in %.1fs (%d failed)",
            len(records),
            total,
            elapsed,
            len(self.failures),
        )
        return CollectionResult(records=records, failures=list(self.failures))

    def process_pull_request(self, pr: PullRequestRecord) -> ProcessedRecord:
        associations = self.linker.find_associated_commits(pr)
        return ProcessedRecord(
            pull_request=pr,
            metrics=compute_metrics(pr, associations),
            associations=associations,
            metadata=ProcessingMetadata(
                processed_at=utcnow(),
                api_version=self.config.api.version,
                limitations=list(KNOWN_LIMITATIONS),
            ),
        )

    def build_filters(self, now: datetime | None = None) -> PullRequestFilters:
        created_after = self.options.since
        if created_after is None and self.options.days:
            created_after = (now or utcnow()) - timedelta(days=self.options.days)
        return PullRequestFilters(
            statuses=list(self.options.states),
            created_after=created_after,
            created_before=self.options.until,
        )

    def _cache_is_fresh(self, records: list[ProcessedRecord]) -> bool:
        max_age = timedelta(milliseconds=self.config.cache.ttl_ms)
        now = utcnow()
        return all(now - r.metadata.processed_at <= max_age for r in records)

    # ------------------------------------------------------------------ #
    # Maintenance                                                          #
    # ------------------------------------------------------------------ #

    def get_cache_stats(self) -> CacheReport | None:
        return self.cache.get_stats() if self.cache is not None else None

    def cleanup(self) -> CacheCleanupResult | None:
        if self.cache is None:
            return None
        return self.cache.cleanup()

    def _report(self, phase: str, current: int, total: int) -> None:
        logger.debug("Progress: %s (%d/%d)", phase, current, total)
        if self.progress:
            self.progress(phase, current, total)
