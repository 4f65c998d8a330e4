"""Per pull request metrics derived from the API record and its associations."""

from __future__ import annotations

from gitspark_core.models import Association, PRMetrics, PullRequestRecord, PullRequestStatus

# Shown in every ProcessedRecord so reports can say what the numbers do not cover.
KNOWN_LIMITATIONS = (
    "Pull request data limited to Azure DevOps API capabilities",
    "Review timing requires additional API calls not currently implemented",
    "Build status integration not implemented",
    "Conflict detection not implemented",
)


def time_to_merge_hours(pr: PullRequestRecord) -> float | None:
    if pr.status is not PullRequestStatus.COMPLETED or pr.closed_date is None:
        return None
    return (pr.closed_date - pr.creation_date).total_seconds() / 3600


def compute_metrics(pr: PullRequestRecord, associations: list[Association]) -> PRMetrics:
    reviewers = pr.reviewers
    creator = pr.created_by.unique_name.lower()
    voted = [r for r in reviewers if r.vote != 0]
    return PRMetrics(
        time_to_merge_hours=time_to_merge_hours(pr),
        reviewer_count=len(reviewers),
        associated_commits=len(associations),
        had_approvals=any(r.vote > 0 for r in reviewers),
        had_rejections=any(r.vote < 0 for r in reviewers),
        self_approved=bool(creator) and any(r.vote > 0 and r.unique_name.lower() == creator for r in reviewers),
        review_coverage=len(voted) / len(reviewers) if reviewers else 0.0,
        merge_strategy=pr.completion_options.merge_strategy,
        source_branch_deleted=pr.completion_options.delete_source_branch,
    )
