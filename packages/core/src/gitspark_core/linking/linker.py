from __future__ import annotations

import logging

from gitspark_core.linking.matching import CommitIndex
from gitspark_core.linking.strategies import (
    BranchAnalysisStrategy,
    LinkStrategy,
    MergeCommitStrategy,
    SquashCommitStrategy,
    TemporalAuthorStrategy,
)
from gitspark_core.models import Association, CommitRecord, PullRequestRecord

logger = logging.getLogger(__name__)


class RecordLinker:
    """Associates pull requests with the commits that implement them.

    The primary strategies run in order and the first non-empty result wins.
    The fallback strategy runs only when every primary strategy came back
    empty.
    """

    def __init__(
        self,
        commits: list[CommitRecord],
        primary: list[LinkStrategy] | None = None,
        fallback: LinkStrategy | None = None,
    ):
        self.index = CommitIndex(commits)
        self.primary = primary if primary is not None else [
            MergeCommitStrategy(self.index),
            SquashCommitStrategy(self.index),
            BranchAnalysisStrategy(self.index),
        ]
        self.fallback = fallback or TemporalAuthorStrategy(self.index)
        logger.info("Record linker initialized with %d commits", len(self.index))

    def find_associated_commits(self, pr: PullRequestRecord) -> list[Association]:
        for strategy in self.primary:
            associations = strategy.try_associate(pr)
            if associations:
                break
        else:
            associations = self.fallback.try_associate(pr)

        logger.debug(
            "PR %d: %d association(s) via %s",
            pr.id,
            len(associations),
            sorted({a.method.value for a in associations}),
        )
        return associations
