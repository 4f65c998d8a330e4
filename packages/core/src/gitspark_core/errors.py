"""Error taxonomy for the Azure DevOps integration.

Fatal errors (configuration, connectivity, exhausted client retries) surface
to the caller immediately. Cache and per-item errors are contained by the
component that observes them; see CacheManager and PullRequestCollector.
"""

from __future__ import annotations


class GitSparkError(Exception):
    """Base class for every error raised by gitspark."""


class ConfigurationError(GitSparkError):
    """Organization/project missing or the resolved configuration is invalid."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ConnectivityError(GitSparkError):
    """The initial connectivity check against the Azure DevOps API failed."""


class ClientError(GitSparkError):
    """An HTTP or network failure that survived the retry budget.

    Carries the failing URL and, where available, the HTTP status code and the
    underlying exception so a fatal fetch can be reported with full context.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        code: str = "CLIENT_ERROR",
        retryable: bool = False,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.code = code
        self.retryable = retryable
        self.cause = cause


class CacheError(GitSparkError):
    """A read or write failure in one of the cache tiers."""

    def __init__(self, message: str, *, key: str | None = None, tier: str | None = None):
        super().__init__(message)
        self.key = key
        self.tier = tier


class CollectorStateError(GitSparkError):
    """The collector was used before initialize() completed successfully."""


class PerItemError(GitSparkError):
    """A single pull request could not be processed.

    Recorded by the collector and reported in aggregate; never raised out of a
    batch.
    """

    def __init__(self, pr_id: int, title: str, cause: BaseException):
        super().__init__(f"PR {pr_id} ({title!r}) failed: {type(cause).__name__}: {cause}")
        self.pr_id = pr_id
        self.title = title
        self.cause = cause


class GitLogError(GitSparkError):
    """``git log`` could not be read for the repository."""
