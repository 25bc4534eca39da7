"""
Rate limiting for image-generation calls to Replicate.

Every prediction the canvas starts goes through one process-wide limiter:
- token bucket with a small burst and a per-minute refill rate
- a minimum spacing between consecutive requests
- exponential backoff (30s doubling, capped at 5 minutes) after HTTP 429
- burst capacity shrinks after 429s and recovers on success
"""

import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 300.0


class ReplicateRateLimiter:
    """
    Thread-safe token bucket guarding Replicate API calls.

    `clock` and `sleep` default to the monotonic clock and `time.sleep`;
    tests substitute fakes so that waiting does not take real time.
    """

    def __init__(
        self,
        max_requests_per_minute: int = 5,
        burst_capacity: int = 3,
        min_interval_seconds: float = 1.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests_per_minute = max_requests_per_minute
        self.burst_capacity = burst_capacity
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep

        self.tokens = float(burst_capacity)
        self.max_tokens = float(burst_capacity)
        self.refill_rate = max_requests_per_minute / 60.0  # tokens per second
        self.last_refill = clock()

        self.request_times: deque = deque(maxlen=max(1, max_requests_per_minute))
        self.last_request_time: Optional[float] = None

        self.rate_limited_until: Optional[float] = None
        self.consecutive_429s = 0
        self.backoff_multiplier = 1.0

        self.lock = threading.RLock()

        logger.info(
            "Replicate rate limiter initialized: %d req/min, burst %d, min interval %.1fs",
            max_requests_per_minute,
            burst_capacity,
            min_interval_seconds,
        )

    def _refill_tokens(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def _is_rate_limited(self) -> bool:
        """Whether a 429 backoff window is still open; resets state once it closes."""
        if self.rate_limited_until is None:
            return False

        if self._clock() < self.rate_limited_until:
            return True

        self.rate_limited_until = None
        self.consecutive_429s = 0
        self.backoff_multiplier = 1.0
        self.max_tokens = float(self.burst_capacity)
        logger.info("Rate limit backoff expired, resuming normal operation")
        return False

    def _calculate_backoff(self) -> float:
        # First 429: 30s, second: 60s, third: 120s ...
        return min(BASE_BACKOFF_SECONDS * 2 ** (self.consecutive_429s - 1), MAX_BACKOFF_SECONDS)

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a request may be made.

        Args:
            timeout: Maximum seconds to wait (None waits forever).

        Returns:
            True if permission was granted, False on timeout.
        """
        start = self._clock()

        while True:
            with self.lock:
                if timeout is not None and self._clock() - start >= timeout:
                    logger.error("Rate limiter timeout reached after %.1fs", timeout)
                    return False

                if self._is_rate_limited():
                    wait_time = self.rate_limited_until - self._clock()
                    logger.warning(
                        "Rate limited: %.1fs left in backoff (consecutive 429s: %d)",
                        wait_time,
                        self.consecutive_429s,
                    )
                    pause = min(1.0, wait_time)
                else:
                    self._refill_tokens()
                    if self.tokens >= 1.0:
                        now = self._clock()
                        if self.last_request_time is not None:
                            gap = now - self.last_request_time
                            if gap < self.min_interval_seconds:
                                self._sleep(self.min_interval_seconds - gap)
                                now = self._clock()

                        self.tokens -= 1.0
                        self.last_request_time = now
                        self.request_times.append(now)
                        logger.debug(
                            "Rate limiter: token acquired (%.1f/%.1f left)",
                            self.tokens,
                            self.max_tokens,
                        )
                        return True
                    pause = 0.1

            self._sleep(pause)

    def report_429(self) -> None:
        """Open a backoff window and shrink the burst after a 429 response."""
        with self.lock:
            self.consecutive_429s += 1
            backoff = self._calculate_backoff()
            self.rate_limited_until = self._clock() + backoff

            self.backoff_multiplier = max(0.5, self.backoff_multiplier * 0.8)
            self.max_tokens = self.burst_capacity * self.backoff_multiplier
            self.tokens = min(self.tokens, self.max_tokens)

            logger.error(
                "Replicate 429 (consecutive: %d). Backing off for %.1fs, burst capacity now %.1f",
                self.consecutive_429s,
                backoff,
                self.max_tokens,
            )

    def report_success(self) -> None:
        """Gradually restore capacity after earlier 429s."""
        with self.lock:
            if self.consecutive_429s == 0:
                return
            self.backoff_multiplier = min(1.0, self.backoff_multiplier * 1.1)
            self.max_tokens = self.burst_capacity * self.backoff_multiplier
            self.consecutive_429s -= 1
            logger.info("Request succeeded, 429 counter down to %d", self.consecutive_429s)

    def get_stats(self) -> dict:
        with self.lock:
            cutoff = self._clock() - 60.0
            return {
                "tokens_available": self.tokens,
                "max_tokens": self.max_tokens,
                "requests_last_minute": sum(1 for t in self.request_times if t > cutoff),
                "max_requests_per_minute": self.max_requests_per_minute,
                "is_rate_limited": self._is_rate_limited(),
                "consecutive_429s": self.consecutive_429s,
                "backoff_multiplier": self.backoff_multiplier,
            }


_rate_limiter: Optional[ReplicateRateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> ReplicateRateLimiter:
    """
    Return the process-wide limiter, creating it on first use.

    Defaults match Replicate's credit-only tier (at most 6 requests/minute,
    1 per second) with some headroom; override with
    REPLICATE_MAX_REQUESTS_PER_MINUTE and REPLICATE_BURST_CAPACITY.
    """
    global _rate_limiter

    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                _rate_limiter = ReplicateRateLimiter(
                    max_requests_per_minute=int(os.getenv("REPLICATE_MAX_REQUESTS_PER_MINUTE", "5")),
                    burst_capacity=int(os.getenv("REPLICATE_BURST_CAPACITY", "3")),
                    min_interval_seconds=1.2,
                )

    return _rate_limiter
