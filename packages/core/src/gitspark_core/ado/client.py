"""Azure DevOps REST client for pull requests.

fetch_pull_requests() runs in three steps:
    _estimate()  → one-item request for a total count and a latency sample
    strategy     → time partitioning above PARTITION_THRESHOLD, else standard
    _request()   → rate-limited GET with bounded exponential-backoff retries

Every request goes through the shared RateLimiter before it is sent, and
requests are issued strictly one at a time.
"""

from __future__ import annotations

import base64
import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Mapping
from urllib.parse import quote, urlparse

import requests

from gitspark_core.ado.pagination import PaginationStrategy
from gitspark_core.ado.rate_limiter import RateLimiter
from gitspark_core.config import AzureDevOpsConfig, is_azure_host, is_organization_url
from gitspark_core.errors import ClientError, ConfigurationError
from gitspark_core.models import ProgressCallback, PullRequestRecord
from gitspark_core.utils.dates import to_iso, utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "gitspark-azure-devops/1.0"
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
MAX_PAGES = 100
PARTITION_DELAY_SECONDS = 1.0
DEFAULT_LOOKBACK = timedelta(days=90)

_CONTINUATION_HEADER = "x-ms-continuationtoken"
_MONTHLY_ABOVE_DAYS = 90
_WEEKLY_ABOVE_DAYS = 30


@dataclass
class PullRequestFilters:
    """Server-side search criteria for a pull request listing."""

    statuses: list[str] = field(default_factory=list)
    created_after: datetime | None = None
    created_before: datetime | None = None
    source_ref_name: str | None = None
    target_ref_name: str | None = None


@dataclass(frozen=True)
class TimePartition:
    """A half-open ``[start, end)`` creation-date range."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class ConnectionResult:
    success: bool
    response_time_ms: float
    error: str | None = None


def build_api_root(config: AzureDevOpsConfig) -> str:
    """Return the ``.../{project}/_apis`` root for ``config``.

    A full organization URL is used as-is. ``*.visualstudio.com`` base URLs
    already name the organization in the host, so the path omits it.
    """
    project = quote(config.project, safe="")
    if is_organization_url(config.organization):
        if not is_azure_host(urlparse(config.organization).hostname or ""):
            raise ConfigurationError(f"Invalid Azure DevOps URL: {config.organization}")
        return f"{config.organization.rstrip('/')}/{project}/_apis"

    base_url = config.api.base_url.rstrip("/")
    hostname = urlparse(base_url).hostname or ""
    if hostname.endswith(".visualstudio.com"):
        return f"{base_url}/{project}/_apis"
    return f"{base_url}/{quote(config.organization, safe='')}/{project}/_apis"


def auth_headers(config: AzureDevOpsConfig) -> dict[str, str]:
    if config.personal_access_token:
        encoded = base64.b64encode(f":{config.personal_access_token}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}
    if config.bearer_token:
        return {"Authorization": f"Bearer {config.bearer_token}"}
    return {}


class AzureDevOpsClient:
    def __init__(
        self,
        config: AzureDevOpsConfig,
        progress: ProgressCallback | None = None,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.config = config
        self.progress = progress
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self.rate_limiter = rate_limiter or RateLimiter(
            config.api.rate_limit.requests_per_minute,
            enabled=config.api.rate_limit.enabled,
            sleep=sleep,
        )
        self.pagination = PaginationStrategy(
            max_page_size=config.api.pagination.max_page_size,
            base_page_size=config.api.pagination.page_size,
        )
        self.api_root = build_api_root(config)
        self.headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            **auth_headers(config),
        }
        # Payloads that could not be parsed during the last fetch.
        self.skipped_items = 0

        logger.info(
            "Azure DevOps client initialized: org=%s project=%s api_root=%s authenticated=%s",
            config.organization,
            config.project,
            self.api_root,
            "Authorization" in self.headers,
        )

    @property
    def pull_requests_url(self) -> str:
        repository = quote(self.config.repository_or_default, safe="")
        return f"{self.api_root}/git/repositories/{repository}/pullrequests"

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def fetch_pull_requests(self, filters: PullRequestFilters | None = None) -> list[PullRequestRecord]:
        """Fetch every pull request matching ``filters``.

        Raises ClientError when a request fails after the retry budget, with
        the failing URL and the last underlying cause attached.
        """
        filters = filters or PullRequestFilters()
        self.skipped_items = 0
        started = self._clock()

        estimated_total, latency_ms = self._estimate(filters)
        partitioning = self.config.api.pagination.enable_time_partitioning
        try:
            if partitioning and self.pagination.should_partition(estimated_total):
                logger.info("Large dataset detected (~%d PRs), using time partitioning", estimated_total)
                records = self._fetch_partitioned(filters, latency_ms, estimated_total)
            else:
                logger.info("Using standard pagination (estimated total: %d)", estimated_total)
                records = self._fetch_standard(filters, latency_ms, estimated_total)
        except ClientError as e:
            logger.error(
                "Pull request fetch failed for %s/%s after %.0f ms: %s",
                self.config.organization,
                self.config.project,
                (self._clock() - started) * 1000,
                e,
            )
            raise

        if self.skipped_items:
            logger.warning("Skipped %d malformed pull request payload(s)", self.skipped_items)
        logger.info("Fetched %d pull requests in %.0f ms", len(records), (self._clock() - started) * 1000)
        return records

    def test_connection(self) -> ConnectionResult:
        """Issue one lightweight request and report whether it succeeded."""
        started = self._clock()
        url = f"{self.api_root}/git/repositories"
        try:
            self._request(url, {"api-version": self.config.api.version, "$top": 1})
        except ClientError as e:
            elapsed = (self._clock() - started) * 1000
            logger.error("Azure DevOps connectivity test failed after %.0f ms: %s", elapsed, e)
            return ConnectionResult(success=False, response_time_ms=elapsed, error=str(e))
        elapsed = (self._clock() - started) * 1000
        logger.info("Azure DevOps connectivity test succeeded in %.0f ms", elapsed)
        return ConnectionResult(success=True, response_time_ms=elapsed)

    def calculate_time_partitions(
        self, filters: PullRequestFilters, now: datetime | None = None
    ) -> list[TimePartition]:
        """Split the filter's creation-date range into contiguous partitions.

        Monthly boundaries above 90 days, weekly above 30, otherwise a single
        partition. Without bounds the range is the last 90 days.
        """
        now = now or utcnow()
        start = filters.created_after or (now - DEFAULT_LOOKBACK)
        end = filters.created_before or now

        total_days = math.ceil((end - start) / timedelta(days=1))
        if total_days > _MONTHLY_ABOVE_DAYS:
            step = _first_of_next_month
        elif total_days > _WEEKLY_ABOVE_DAYS:
            step = _one_week_later
        else:
            return [TimePartition(start, end)]

        partitions = []
        current = start
        while current < end:
            boundary = min(step(current), end)
            partitions.append(TimePartition(current, boundary))
            current = boundary
        return partitions

    # ------------------------------------------------------------------ #
    # Fetch strategies                                                     #
    # ------------------------------------------------------------------ #

    def _estimate(self, filters: PullRequestFilters) -> tuple[int, float]:
        """Return ``(estimated_total, latency_ms)``; the total is -1 when unknown."""
        started = self._clock()
        try:
            body, _ = self._request(self.pull_requests_url, self._build_params(filters, page_size=1))
        except ClientError as e:
            logger.debug("Could not estimate pull request count: %s", e)
            return -1, (self._clock() - started) * 1000
        latency_ms = (self._clock() - started) * 1000
        count = body.get("count")
        return (count if isinstance(count, int) and count > 0 else -1), latency_ms

    def _fetch_standard(
        self, filters: PullRequestFilters, latency_ms: float, estimated_total: int = -1
    ) -> list[PullRequestRecord]:
        # The estimate's count describes its own one-item page, so the page size
        # is chosen from latency alone.
        page_size = self.pagination.calculate_optimal_page_size("pullrequests", -1, latency_ms)
        records: list[PullRequestRecord] = []
        token: str | None = None
        skip = 0
        pages = 0

        while True:
            params = self._build_params(filters, page_size, token, skip)
            body, headers = self._request(self.pull_requests_url, params)
            items = body.get("value") or []
            records.extend(self._parse_items(items, filters))
            pages += 1

            token = body.get("continuationToken") or headers.get(_CONTINUATION_HEADER)
            skip += len(items)
            self._report("Fetching pull requests", len(records), estimated_total)
            logger.debug(
                "Fetched page %d: %d items (total %d, more=%s)", pages, len(items), len(records), bool(token)
            )

            # No token: a full page may still mean more results behind $skip.
            has_more = bool(token) or len(items) >= page_size
            if not has_more or not items:
                break
            if pages >= MAX_PAGES:
                logger.warning(
                    "Reached the %d page limit; results may be incomplete (%d fetched)", MAX_PAGES, len(records)
                )
                break
        return records

    def _fetch_partitioned(
        self, filters: PullRequestFilters, latency_ms: float, estimated_total: int = -1
    ) -> list[PullRequestRecord]:
        partitions = self.calculate_time_partitions(filters)
        logger.info("Fetching %d time partitions", len(partitions))

        records: list[PullRequestRecord] = []
        seen: set[int] = set()
        for index, partition in enumerate(partitions):
            self._report(f"Fetching partition {index + 1}/{len(partitions)}", index, len(partitions))
            logger.info(
                "Fetching partition %d/%d: %s .. %s",
                index + 1,
                len(partitions),
                to_iso(partition.start),
                to_iso(partition.end),
            )
            scoped = replace(filters, created_after=partition.start, created_before=partition.end)
            for record in self._fetch_standard(scoped, latency_ms, estimated_total):
                # A record created exactly on a boundary can be reported by both neighbours.
                if record.id not in seen:
                    seen.add(record.id)
                    records.append(record)
            if index < len(partitions) - 1:
                self._sleep(PARTITION_DELAY_SECONDS)
        return records

    # ------------------------------------------------------------------ #
    # HTTP                                                                 #
    # ------------------------------------------------------------------ #

    def _build_params(
        self,
        filters: PullRequestFilters,
        page_size: int | None = None,
        continuation_token: str | None = None,
        skip: int = 0,
    ) -> dict:
        params: dict = {"api-version": self.config.api.version}
        if page_size:
            params["$top"] = page_size
        if continuation_token:
            params["continuationToken"] = continuation_token
        elif skip:
            params["$skip"] = skip

        statuses = sorted(set(filters.statuses))
        if len(statuses) == 1:
            params["searchCriteria.status"] = statuses[0]
        elif statuses:
            # The API filters on a single status; narrow the rest locally.
            params["searchCriteria.status"] = "all"
        if filters.created_after:
            params["searchCriteria.minTime"] = to_iso(filters.created_after)
            params["searchCriteria.queryTimeRangeType"] = "created"
        if filters.created_before:
            params["searchCriteria.maxTime"] = to_iso(filters.created_before)
            params["searchCriteria.queryTimeRangeType"] = "created"
        if filters.source_ref_name:
            params["searchCriteria.sourceRefName"] = filters.source_ref_name
        if filters.target_ref_name:
            params["searchCriteria.targetRefName"] = filters.target_ref_name
        return params

    def _parse_items(self, items: list, filters: PullRequestFilters) -> list[PullRequestRecord]:
        wanted = set(filters.statuses)
        records = []
        for item in items:
            try:
                record = PullRequestRecord.from_api(item)
            except (KeyError, TypeError, ValueError) as e:
                self.skipped_items += 1
                pr_id = item.get("pullRequestId") if isinstance(item, dict) else None
                logger.warning("Skipping malformed pull request payload (id=%s): %s", pr_id, e)
                continue
            if wanted and record.status.value not in wanted:
                continue
            records.append(record)
        return records

    def _request(self, url: str, params: dict | None = None) -> tuple[dict, Mapping[str, str]]:
        """GET ``url`` and return ``(json_body, response_headers)``.

        Network errors and 429/5xx responses are retried up to
        ``api.max_retries`` times with ``2**attempt`` second backoff; other
        4xx responses fail immediately.
        """
        retries = self.config.api.max_retries
        timeout = self.config.api.timeout_ms / 1000
        last_error: ClientError | None = None

        for attempt in range(retries + 1):
            self.rate_limiter.wait_if_needed()
            try:
                response = self.session.get(url, params=params, headers=self.headers, timeout=timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = ClientError(
                    f"Network error calling {url}: {e}", url=url, code="NETWORK_ERROR", retryable=True, cause=e
                )
            except requests.RequestException as e:
                raise ClientError(f"Request to {url} failed: {e}", url=url, cause=e) from e
            else:
                if response.ok:
                    return self._decode(response, url), response.headers
                status = response.status_code
                last_error = ClientError(
                    f"HTTP {status}: {response.reason}",
                    url=url,
                    status_code=status,
                    code=f"HTTP_{status}",
                    retryable=status in RETRYABLE_STATUSES,
                )
                if not last_error.retryable:
                    raise last_error

            if attempt < retries:
                delay = 2**attempt
                logger.warning(
                    "Azure DevOps request failed (attempt %d/%d): %s. Retrying in %ds...",
                    attempt + 1,
                    retries + 1,
                    last_error,
                    delay,
                )
                self._sleep(delay)

        logger.error("Azure DevOps request failed after %d attempts: %s", retries + 1, last_error)
        raise ClientError(
            f"Request failed after {retries + 1} attempts: {last_error}",
            url=url,
            status_code=last_error.status_code,
            code=last_error.code,
            retryable=True,
            cause=last_error,
        ) from last_error

    @staticmethod
    def _decode(response: requests.Response, url: str) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise ClientError(
                f"Invalid JSON from {url}", url=url, status_code=response.status_code, code="INVALID_RESPONSE", cause=e
            ) from e
        if not isinstance(body, dict):
            raise ClientError(
                f"Unexpected response shape from {url}",
                url=url,
                status_code=response.status_code,
                code="INVALID_RESPONSE",
            )
        return body

    def _report(self, phase: str, current: int, total: int) -> None:
        if self.progress:
            self.progress(phase, current, total)


def _first_of_next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return value.replace(month=value.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _one_week_later(value: datetime) -> datetime:
    return value + timedelta(days=7)
