"""Page-size selection for Azure DevOps list endpoints.

A heuristic: it only affects how many round trips a fetch takes, never which
records come back.
"""

from __future__ import annotations

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000

# Estimated totals above this switch the client to time partitioning.
PARTITION_THRESHOLD = 5000

_SLOW_LATENCY_MS = 1000
_FAST_LATENCY_MS = 200
_LARGE_TOTAL = 10_000
_SMALL_TOTAL = 100
_MIN_PAGE_SIZE = 10


class PaginationStrategy:
    def __init__(self, max_page_size: int = MAX_PAGE_SIZE, base_page_size: int = DEFAULT_PAGE_SIZE):
        self.max_page_size = min(max_page_size, MAX_PAGE_SIZE)
        self.base_page_size = base_page_size

    def calculate_optimal_page_size(self, endpoint: str, estimated_total: int, network_latency_ms: float) -> int:
        """Pick a page size for ``endpoint``.

        ``estimated_total`` is -1 when the service did not report a count; the
        small-total rule is skipped in that case.
        """
        page_size = self.base_page_size

        if network_latency_ms > _SLOW_LATENCY_MS:
            page_size = min(500, MAX_PAGE_SIZE)
        elif network_latency_ms < _FAST_LATENCY_MS:
            page_size = min(50, MAX_PAGE_SIZE)

        if estimated_total > _LARGE_TOTAL:
            page_size = min(1000, MAX_PAGE_SIZE)
        elif 0 <= estimated_total < _SMALL_TOTAL:
            page_size = max(estimated_total, _MIN_PAGE_SIZE)

        return min(page_size, self.max_page_size)

    @staticmethod
    def should_partition(estimated_total: int) -> bool:
        return estimated_total > PARTITION_THRESHOLD
