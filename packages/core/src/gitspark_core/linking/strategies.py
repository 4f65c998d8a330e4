"""Pull request to commit association strategies.

Each strategy answers one question, "which commits implement this PR?", from a
different kind of evidence. RecordLinker runs them in a fixed order.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import timedelta

from gitspark_core.linking.matching import CommitIndex, authors_match, subject
from gitspark_core.models import Association, AssociationMethod, CommitRecord, PullRequestRecord
from gitspark_core.utils.text import similarity

logger = logging.getLogger(__name__)

SEARCH_WINDOW = timedelta(days=3)
TEMPORAL_WINDOW = timedelta(days=7)

MERGE_COMMIT_CONFIDENCE = 0.95

# Squash scores are summed without a cap (max 1.8).
SQUASH_TITLE_SIMILARITY_THRESHOLD = 0.8
SQUASH_TITLE_WEIGHT = 0.7
SQUASH_PR_REFERENCE_WEIGHT = 0.8
SQUASH_AUTHOR_WEIGHT = 0.2
SQUASH_SINGLE_PARENT_WEIGHT = 0.1
SQUASH_ACCEPT_ABOVE = 0.6

TEMPORAL_PROXIMITY_WEIGHT = 0.5
TEMPORAL_SIMILARITY_WEIGHT = 0.3
TEMPORAL_BASE_SCORE = 0.1
TEMPORAL_ACCEPT_ABOVE = 0.3
TEMPORAL_MAX_RESULTS = 5


class LinkStrategy(ABC):
    method: AssociationMethod

    def __init__(self, index: CommitIndex):
        self.index = index

    @abstractmethod
    def try_associate(self, pr: PullRequestRecord) -> list[Association]:
        """Return associations for ``pr``; an empty list means no evidence."""


class MergeCommitStrategy(LinkStrategy):
    """Commits whose message is a known merge phrasing naming the PR."""

    method = AssociationMethod.MERGE_COMMIT

    @staticmethod
    def patterns(pr: PullRequestRecord) -> list[re.Pattern]:
        pr_id = re.escape(str(pr.id))
        # Both the full ref and the short branch name appear in the wild.
        refs = {pr.source_ref_name, pr.source_branch} - {""}
        patterns = [
            rf"Merged PR {pr_id}(?!\d)",
            rf"Merge pull request #{pr_id}(?!\d)",
        ]
        for ref in sorted(refs):
            escaped = re.escape(ref)
            patterns.append(rf"Merged in {escaped}(?![\w./-])")
            patterns.append(rf"Merge branch '{escaped}'")
        return [re.compile(p, re.IGNORECASE) for p in patterns]

    def try_associate(self, pr: PullRequestRecord) -> list[Association]:
        patterns = self.patterns(pr)
        associations = []
        for commit in self.index.around(pr.reference_date, SEARCH_WINDOW):
            matched = next((p for p in patterns if p.search(commit.message)), None)
            if matched is None:
                continue
            associations.append(
                Association(
                    commit_hash=commit.hash,
                    confidence=MERGE_COMMIT_CONFIDENCE,
                    method=self.method,
                    metadata={
                        "matchedPattern": matched.pattern,
                        "timeDistanceSeconds": _distance(commit, pr),
                        "authorMatch": authors_match(commit, pr.created_by),
                    },
                )
            )
        return associations


class SquashCommitStrategy(LinkStrategy):
    """Single-parent commits that look like a squashed PR."""

    method = AssociationMethod.SQUASH_COMMIT

    def try_associate(self, pr: PullRequestRecord) -> list[Association]:
        reference = re.compile(rf"(?:#|PR ){re.escape(str(pr.id))}(?!\d)")
        associations = []
        for commit in self.index.around(pr.reference_date, SEARCH_WINDOW):
            title_similarity = similarity(subject(commit.message), pr.title)
            evidence = {
                "titleMatch": title_similarity > SQUASH_TITLE_SIMILARITY_THRESHOLD,
                "prReference": bool(reference.search(commit.message)),
                "authorMatch": authors_match(commit, pr.created_by),
                "singleParent": not commit.is_merge,
            }
            score = 0.0
            if evidence["titleMatch"]:
                score += SQUASH_TITLE_WEIGHT
            if evidence["prReference"]:
                score += SQUASH_PR_REFERENCE_WEIGHT
            if evidence["authorMatch"]:
                score += SQUASH_AUTHOR_WEIGHT
            if evidence["singleParent"]:
                score += SQUASH_SINGLE_PARENT_WEIGHT

            if score > SQUASH_ACCEPT_ABOVE:
                associations.append(
                    Association(
                        commit_hash=commit.hash,
                        confidence=round(score, 4),
                        method=self.method,
                        metadata={
                            "titleSimilarity": round(title_similarity, 4),
                            "timeDistanceSeconds": _distance(commit, pr),
                            "evidence": evidence,
                        },
                    )
                )
        return associations


class BranchAnalysisStrategy(LinkStrategy):
    """Placeholder for source-branch history analysis. Never associates."""

    method = AssociationMethod.BRANCH_ANALYSIS

    def try_associate(self, pr: PullRequestRecord) -> list[Association]:
        logger.debug("Branch analysis not available for PR %d (%s)", pr.id, pr.source_branch)
        return []


class TemporalAuthorStrategy(LinkStrategy):
    """Fallback: the creator's own commits close to the PR creation date."""

    method = AssociationMethod.MANUAL_LINK

    def try_associate(self, pr: PullRequestRecord) -> list[Association]:
        window_seconds = TEMPORAL_WINDOW.total_seconds()
        associations = []
        for commit in self.index.around(pr.creation_date, TEMPORAL_WINDOW):
            if not authors_match(commit, pr.created_by):
                continue

            distance = abs((commit.date - pr.creation_date).total_seconds())
            proximity = max(0.0, 1 - distance / window_seconds)
            message_similarity = max(
                similarity(commit.message, pr.title),
                similarity(commit.message, pr.description),
            )
            score = (
                TEMPORAL_PROXIMITY_WEIGHT * proximity
                + TEMPORAL_SIMILARITY_WEIGHT * message_similarity
                + TEMPORAL_BASE_SCORE
            )
            if score > TEMPORAL_ACCEPT_ABOVE:
                associations.append(
                    Association(
                        commit_hash=commit.hash,
                        confidence=round(score, 4),
                        method=self.method,
                        metadata={
                            "timeDistanceSeconds": distance,
                            "messageSimilarity": round(message_similarity, 4),
                            "authorMatch": True,
                        },
                    )
                )

        associations.sort(key=lambda a: a.confidence, reverse=True)
        return associations[:TEMPORAL_MAX_RESULTS]


def _distance(commit: CommitRecord, pr: PullRequestRecord) -> float:
    return abs((commit.date - pr.reference_date).total_seconds())
