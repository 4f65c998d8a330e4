"""Sliding-window request throttle for the Azure DevOps API."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Allow at most ``requests_per_minute`` calls in any trailing 60 s window.

    ``wait_if_needed()`` reserves a slot before each request, sleeping until
    the oldest timestamp in the window ages out when the window is full. The
    slot is recorded with the post-sleep time, so completed calls never exceed
    the limit in any window.
    """

    def __init__(
        self,
        requests_per_minute: int,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.requests_per_minute = requests_per_minute
        self.enabled = enabled
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()

    def wait_if_needed(self) -> None:
        if not self.enabled:
            return

        now = self._clock()
        self._prune(now)
        while len(self._timestamps) >= self.requests_per_minute:
            wait = WINDOW_SECONDS - (now - self._timestamps[0])
            if wait > 0:
                logger.debug("Rate limit reached (%d/min); waiting %.2fs", self.requests_per_minute, wait)
                self._sleep(wait)
            now = self._clock()
            self._prune(now)

        self._timestamps.append(now)

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= WINDOW_SECONDS:
            self._timestamps.popleft()
