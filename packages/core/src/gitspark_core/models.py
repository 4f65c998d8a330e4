"""Domain records shared by the client, linker, collector and cache layers.

Wire shapes (``from_api`` / ``to_api``) follow the Azure DevOps REST payloads
so a cached raw pull request is byte-compatible with what the API returned.
``ProcessedRecord.to_dict`` is the versioned on-disk representation of a
processed pull request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from gitspark_core.utils.dates import parse_timestamp, to_iso

# Bump when the shape of ProcessedRecord.to_dict() changes. Cached collections
# written with another version are ignored on read.
PROCESSED_SCHEMA_VERSION = 1

_BRANCH_PREFIX = "refs/heads/"

# (phase, current, total); total is -1 when unknown.
ProgressCallback = Callable[[str, int, int], None]


class PullRequestStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class AssociationMethod(str, Enum):
    MERGE_COMMIT = "merge-commit"
    SQUASH_COMMIT = "squash-commit"
    BRANCH_ANALYSIS = "branch-analysis"
    # Temporal + author fallback; the name is kept for report compatibility.
    MANUAL_LINK = "manual-link"


@dataclass(frozen=True)
class Identity:
    display_name: str
    unique_name: str = ""  # usually the e-mail / UPN

    @classmethod
    def from_api(cls, payload: dict | None) -> Identity:
        payload = payload or {}
        return cls(display_name=payload.get("displayName") or "", unique_name=payload.get("uniqueName") or "")

    def to_api(self) -> dict:
        return {"displayName": self.display_name, "uniqueName": self.unique_name}


@dataclass(frozen=True)
class Reviewer:
    display_name: str
    unique_name: str = ""
    vote: int = 0  # 10 approved, 5 approved w/ suggestions, 0 none, -5 waiting, -10 rejected

    @classmethod
    def from_api(cls, payload: dict) -> Reviewer:
        return cls(
            display_name=payload.get("displayName") or "",
            unique_name=payload.get("uniqueName") or "",
            vote=int(payload.get("vote") or 0),
        )

    def to_api(self) -> dict:
        return {"displayName": self.display_name, "uniqueName": self.unique_name, "vote": self.vote}


@dataclass(frozen=True)
class CompletionOptions:
    merge_strategy: str | None = None
    delete_source_branch: bool = False

    @classmethod
    def from_api(cls, payload: dict | None) -> CompletionOptions:
        payload = payload or {}
        return cls(
            merge_strategy=payload.get("mergeStrategy"),
            delete_source_branch=bool(payload.get("deleteSourceBranch", False)),
        )

    def to_api(self) -> dict:
        return {"mergeStrategy": self.merge_strategy, "deleteSourceBranch": self.delete_source_branch}


@dataclass(frozen=True)
class PullRequestRecord:
    """A pull request as returned by the Azure DevOps API. Identity is ``id``."""

    id: int
    title: str
    created_by: Identity
    status: PullRequestStatus
    creation_date: datetime
    closed_date: datetime | None = None
    description: str = ""
    source_ref_name: str = ""
    target_ref_name: str = ""
    reviewers: tuple[Reviewer, ...] = ()
    completion_options: CompletionOptions = field(default_factory=CompletionOptions)

    @property
    def source_branch(self) -> str:
        """Source ref without the ``refs/heads/`` prefix."""
        return self.source_ref_name.removeprefix(_BRANCH_PREFIX)

    @property
    def reference_date(self) -> datetime:
        """Close date for finished PRs, creation date otherwise."""
        return self.closed_date or self.creation_date

    @classmethod
    def from_api(cls, payload: dict) -> PullRequestRecord:
        """Build a record from an API payload.

        Raises KeyError/ValueError when the payload lacks an id or creation
        date, or carries an unknown status.
        """
        creation_date = parse_timestamp(payload["creationDate"])
        if creation_date is None:
            raise ValueError("pull request payload has an empty creationDate")
        return cls(
            id=int(payload["pullRequestId"]),
            title=payload.get("title") or "",
            description=payload.get("description") or "",
            created_by=Identity.from_api(payload.get("createdBy")),
            status=PullRequestStatus(payload.get("status", "active")),
            creation_date=creation_date,
            closed_date=parse_timestamp(payload.get("closedDate")),
            source_ref_name=payload.get("sourceRefName") or "",
            target_ref_name=payload.get("targetRefName") or "",
            reviewers=tuple(Reviewer.from_api(r) for r in payload.get("reviewers") or []),
            completion_options=CompletionOptions.from_api(payload.get("completionOptions")),
        )

    def to_api(self) -> dict:
        return {
            "pullRequestId": self.id,
            "title": self.title,
            "description": self.description,
            "createdBy": self.created_by.to_api(),
            "status": self.status.value,
            "creationDate": to_iso(self.creation_date),
            "closedDate": to_iso(self.closed_date),
            "sourceRefName": self.source_ref_name,
            "targetRefName": self.target_ref_name,
            "reviewers": [r.to_api() for r in self.reviewers],
            "completionOptions": self.completion_options.to_api(),
        }


@dataclass(frozen=True)
class CommitRecord:
    """A commit supplied by the git history collector. Read-only input."""

    hash: str
    author: str
    author_email: str
    date: datetime
    message: str
    is_merge: bool = False


@dataclass(frozen=True)
class Association:
    """Evidence that a commit implements a pull request."""

    commit_hash: str
    confidence: float
    method: AssociationMethod
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        return {
            "commitHash": self.commit_hash,
            "confidence": self.confidence,
            "method": self.method.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Association:
        return cls(
            commit_hash=d["commitHash"],
            confidence=float(d["confidence"]),
            method=AssociationMethod(d["method"]),
            metadata=d.get("metadata") or {},
        )


@dataclass
class PRMetrics:
    time_to_merge_hours: float | None = None
    reviewer_count: int = 0
    associated_commits: int = 0
    had_approvals: bool = False
    had_rejections: bool = False
    self_approved: bool = False
    review_coverage: float = 0.0
    merge_strategy: str | None = None
    source_branch_deleted: bool = False

    def to_dict(self) -> dict:
        return {
            "timeToMergeHours": self.time_to_merge_hours,
            "reviewerCount": self.reviewer_count,
            "associatedCommits": self.associated_commits,
            "hadApprovals": self.had_approvals,
            "hadRejections": self.had_rejections,
            "selfApproved": self.self_approved,
            "reviewCoverage": self.review_coverage,
            "mergeStrategy": self.merge_strategy,
            "sourceBranchDeleted": self.source_branch_deleted,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PRMetrics:
        return cls(
            time_to_merge_hours=d.get("timeToMergeHours"),
            reviewer_count=d.get("reviewerCount", 0),
            associated_commits=d.get("associatedCommits", 0),
            had_approvals=d.get("hadApprovals", False),
            had_rejections=d.get("hadRejections", False),
            self_approved=d.get("selfApproved", False),
            review_coverage=d.get("reviewCoverage", 0.0),
            merge_strategy=d.get("mergeStrategy"),
            source_branch_deleted=d.get("sourceBranchDeleted", False),
        )


@dataclass
class ProcessingMetadata:
    processed_at: datetime
    api_version: str
    cache_hit: bool = False
    cache_source: str = "api"  # "api" | "cache"
    limitations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processedAt": to_iso(self.processed_at),
            "apiVersion": self.api_version,
            "limitations": list(self.limitations),
            "warnings": list(self.warnings),
            "cacheInfo": {"hit": self.cache_hit, "source": self.cache_source},
        }

    @classmethod
    def from_dict(cls, d: dict) -> ProcessingMetadata:
        processed_at = parse_timestamp(d.get("processedAt"))
        if processed_at is None:
            raise ValueError("processing metadata is missing processedAt")
        cache_info = d.get("cacheInfo") or {}
        return cls(
            processed_at=processed_at,
            api_version=d.get("apiVersion", ""),
            cache_hit=cache_info.get("hit", False),
            cache_source=cache_info.get("source", "api"),
            limitations=list(d.get("limitations") or []),
            warnings=list(d.get("warnings") or []),
        )


@dataclass
class ProcessedRecord:
    """A pull request plus its metrics and commit associations for one run."""

    pull_request: PullRequestRecord
    metrics: PRMetrics
    associations: list[Association]
    metadata: ProcessingMetadata

    @property
    def best_association(self) -> Association | None:
        if not self.associations:
            return None
        return max(self.associations, key=lambda a: a.confidence)

    def to_dict(self) -> dict:
        return {
            "schemaVersion": PROCESSED_SCHEMA_VERSION,
            "pullRequest": self.pull_request.to_api(),
            "metrics": self.metrics.to_dict(),
            "gitCommitAssociations": [a.to_dict() for a in self.associations],
            "processingMetadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> ProcessedRecord:
        version = d.get("schemaVersion")
        if version != PROCESSED_SCHEMA_VERSION:
            raise ValueError(f"unsupported processed record schema version: {version!r}")
        return cls(
            pull_request=PullRequestRecord.from_api(d["pullRequest"]),
            metrics=PRMetrics.from_dict(d.get("metrics") or {}),
            associations=[Association.from_dict(a) for a in d.get("gitCommitAssociations") or []],
            metadata=ProcessingMetadata.from_dict(d["processingMetadata"]),
        )
