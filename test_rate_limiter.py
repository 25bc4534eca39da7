"""
Tests for the Replicate rate limiter, run against a fake clock so no test
waits in real time.
"""

import pytest

from pixelcanvas.services.rate_limiter import ReplicateRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return ReplicateRateLimiter(
        max_requests_per_minute=5,
        burst_capacity=3,
        min_interval_seconds=1.2,
        clock=clock,
        sleep=clock.sleep,
    )


def test_burst_is_granted_with_minimum_spacing(limiter, clock):
    for _ in range(3):
        assert limiter.acquire(timeout=5.0)

    # The first request goes straight through; the next two wait out the interval.
    assert clock.sleeps == pytest.approx([1.2, 1.2])
    assert limiter.get_stats()["requests_last_minute"] == 3


def test_waits_for_refill_once_burst_is_spent(limiter, clock):
    for _ in range(3):
        limiter.acquire()
    start = clock.now

    assert limiter.acquire(timeout=60.0)
    # Refill is 5 tokens/min, so a new token takes several seconds to appear.
    assert clock.now - start > 5.0


def test_times_out_when_no_tokens(limiter, clock):
    for _ in range(3):
        limiter.acquire()

    assert limiter.acquire(timeout=2.0) is False


def test_429_opens_backoff_window(limiter, clock):
    limiter.report_429()

    stats = limiter.get_stats()
    assert stats["is_rate_limited"] is True
    assert stats["consecutive_429s"] == 1
    assert stats["max_tokens"] == pytest.approx(3 * 0.8)
    assert limiter.acquire(timeout=2.0) is False


def test_backoff_grows_and_is_capped(limiter, clock):
    limiter.report_429()
    first = limiter.rate_limited_until - clock.now
    limiter.report_429()
    second = limiter.rate_limited_until - clock.now
    for _ in range(10):
        limiter.report_429()
    capped = limiter.rate_limited_until - clock.now

    assert first == pytest.approx(30.0)
    assert second == pytest.approx(60.0)
    assert capped == pytest.approx(300.0)


def test_backoff_expires(limiter, clock):
    limiter.report_429()
    clock.now += 31.0

    assert limiter.acquire(timeout=5.0)
    assert limiter.get_stats()["consecutive_429s"] == 0


def test_success_restores_capacity(limiter):
    limiter.report_429()
    reduced = limiter.max_tokens
    limiter.report_success()

    assert limiter.consecutive_429s == 0
    assert limiter.max_tokens > reduced
