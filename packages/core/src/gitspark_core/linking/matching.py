"""Shared helpers for the commit-linking strategies."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from datetime import datetime, timedelta

from gitspark_core.models import CommitRecord, Identity


def authors_match(commit: CommitRecord, creator: Identity) -> bool:
    """Return True when ``commit`` was plausibly authored by ``creator``.

    Matches on equal e-mail (case-insensitive), the creator's display name
    appearing in the commit author, or equal e-mail local parts across
    different domains. Empty values never match.
    """
    commit_email = commit.author_email.strip().lower()
    creator_email = creator.unique_name.strip().lower()
    display_name = creator.display_name.strip().lower()

    if commit_email and commit_email == creator_email:
        return True
    if display_name and display_name in commit.author.lower():
        return True

    commit_user = commit_email.split("@")[0]
    creator_user = creator_email.split("@")[0]
    return bool(commit_user) and commit_user == creator_user


def subject(message: str) -> str:
    """First line of a commit message."""
    return message.strip().split("\n", 1)[0].strip()


class CommitIndex:
    """Commits ordered by date for inclusive window lookups."""

    def __init__(self, commits: list[CommitRecord]):
        self.commits = sorted(commits, key=lambda c: c.date)
        self._dates = [c.date for c in self.commits]

    def __len__(self) -> int:
        return len(self.commits)

    def around(self, center: datetime, radius: timedelta) -> list[CommitRecord]:
        """Commits dated within ``[center - radius, center + radius]``."""
        lo = bisect_left(self._dates, center - radius)
        hi = bisect_right(self._dates, center + radius)
        return self.commits[lo:hi]
