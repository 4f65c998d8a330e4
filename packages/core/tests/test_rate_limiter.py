"""Tests for the sliding-window rate limiter."""

import pytest

from gitspark_core.ado.rate_limiter import RateLimiter


class FakeClock:
    """Monotonic clock whose sleep advances time instead of blocking."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock, rpm=3, enabled=True):
    return RateLimiter(rpm, enabled=enabled, clock=clock, sleep=clock.sleep)


def test_under_limit_never_sleeps():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.wait_if_needed()
    assert clock.sleeps == []


def test_full_window_sleeps_until_oldest_ages_out():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.wait_if_needed()
        clock.now += 5

    limiter.wait_if_needed()

    # Oldest call was 15s ago, so the fourth waits the remaining 45s.
    assert clock.sleeps == [pytest.approx(45.0)]


def test_no_window_exceeds_limit():
    clock = FakeClock()
    limiter = _limiter(clock, rpm=5)
    calls = []
    for _ in range(23):
        limiter.wait_if_needed()
        calls.append(clock.now)
        clock.now += 1.5

    for start in calls:
        in_window = [t for t in calls if start <= t < start + 60]
        assert len(in_window) <= 5


def test_old_requests_are_pruned():
    clock = FakeClock()
    limiter = _limiter(clock, rpm=2)
    limiter.wait_if_needed()
    limiter.wait_if_needed()
    clock.now += 61
    limiter.wait_if_needed()
    assert clock.sleeps == []


def test_disabled_limiter_is_a_no_op():
    clock = FakeClock()
    limiter = _limiter(clock, rpm=1, enabled=False)
    for _ in range(10):
        limiter.wait_if_needed()
    assert clock.sleeps == []


def test_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        RateLimiter(0)
