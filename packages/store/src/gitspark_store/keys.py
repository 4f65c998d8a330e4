"""Cache key grammar: ``azure-devops:{type}:{component}[:{component}...]``."""

from __future__ import annotations

KEY_PREFIX = "azure-devops"

PULL_REQUEST = "pr"
ANALYTICS = "analytics"
CONFIG = "config"

_TYPES = (PULL_REQUEST, ANALYTICS, CONFIG)


def cache_key(kind: str, *components: str | int) -> str:
    if kind not in _TYPES:
        raise ValueError(f"unknown cache key type: {kind!r}")
    if not components:
        raise ValueError("a cache key needs at least one component")
    return ":".join([KEY_PREFIX, kind, *(str(c) for c in components)])


def pull_request_key(pr_id: int) -> str:
    return cache_key(PULL_REQUEST, pr_id)


def processed_collection_key(collection: str) -> str:
    """Key of the processed PR collection for one ``org-project-repo``."""
    return cache_key(ANALYTICS, "processed-prs", collection)
