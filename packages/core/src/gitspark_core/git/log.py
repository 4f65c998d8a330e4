"""Read commit history with ``git log``.

Stands in for the full history collector: it yields only the fields commit
linking needs.
"""

from __future__ import annotations

import logging
import subprocess
from datetime import datetime
from pathlib import Path

from gitspark_core.errors import GitLogError
from gitspark_core.models import CommitRecord
from gitspark_core.utils.dates import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_FORMAT = _FIELD_SEP.join(["%H", "%an", "%ae", "%aI", "%P", "%B"]) + _RECORD_SEP

GIT_LOG_TIMEOUT = 120


def parse_log(output: str) -> list[CommitRecord]:
    """Parse ``git log`` output produced with the module's format string."""
    commits = []
    for raw in output.split(_RECORD_SEP):
        raw = raw.strip("\n")
        if not raw.strip():
            continue
        parts = raw.split(_FIELD_SEP)
        if len(parts) != 6:
            logger.warning("Skipping unparseable git log record: %r", raw[:80])
            continue
        commit_hash, author, email, date, parents, message = parts
        commits.append(
            CommitRecord(
                hash=commit_hash.strip(),
                author=author,
                author_email=email,
                date=parse_timestamp(date),
                message=message.strip(),
                is_merge=len(parents.split()) > 1,
            )
        )
    return commits


def read_commits(
    repo_path: str | Path,
    since: datetime | None = None,
    until: datetime | None = None,
    branch: str | None = None,
) -> list[CommitRecord]:
    """Return commits reachable from ``branch`` (default HEAD), newest first.

    Raises GitLogError when git is missing or the path is not a repository.
    """
    args = ["git", "log", f"--format={_FORMAT}"]
    if since:
        args.append(f"--since={to_iso(since)}")
    if until:
        args.append(f"--until={to_iso(until)}")
    if branch:
        args.append(branch)

    try:
        result = subprocess.run(
            args,
            cwd=str(repo_path),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=GIT_LOG_TIMEOUT,
        )
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired) as e:
        raise GitLogError(f"Could not run git log in {repo_path}: {e}") from e
    if result.returncode != 0:
        raise GitLogError(f"git log failed in {repo_path}: {result.stderr.strip()}")

    commits = parse_log(result.stdout)
    logger.info("Read %d commits from %s", len(commits), repo_path)
    return commits
