"""Per-client token bucket rate limiting."""

import os
import threading
import time
from typing import Callable

from psgate.exec.types import RateBucket, RateDecision


def default_client_key() -> str:
    """Identity of the calling client: the parent process."""
    return f"ppid:{os.getppid()}"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    Token bucket per client key.

    Capacity is burst; floor(elapsed / interval) * max_requests tokens are
    added lazily on each check. No background timer.
    """

    def __init__(
        self,
        burst: int = 10,
        max_requests: int = 5,
        interval_ms: int = 10_000,
        enabled: bool = True,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.burst = burst
        self.max_requests = max_requests
        self.interval_ms = interval_ms
        self.enabled = enabled
        self._clock = clock
        self._buckets: dict[str, RateBucket] = {}
        self._lock = threading.Lock()

    def _refill(self, bucket: RateBucket, now: float) -> None:
        intervals = int((now - bucket.last_refill_at) // self.interval_ms)
        if intervals > 0:
            bucket.tokens = min(self.burst, bucket.tokens + intervals * self.max_requests)
            bucket.last_refill_at += intervals * self.interval_ms

    def allow(self, client_key: str) -> RateDecision:
        """Take one token for client_key if one is available."""
        if not self.enabled:
            return RateDecision(allowed=True, remaining=self.burst, reset_ms=0)

        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(client_key)
            if bucket is None:
                bucket = RateBucket(tokens=self.burst, last_refill_at=now)
                self._buckets[client_key] = bucket
            else:
                self._refill(bucket, now)

            reset_ms = max(0, int(bucket.last_refill_at + self.interval_ms - now))
            if bucket.tokens <= 0:
                return RateDecision(allowed=False, remaining=0, reset_ms=reset_ms)

            bucket.tokens -= 1
            return RateDecision(allowed=True, remaining=int(bucket.tokens), reset_ms=reset_ms)

    def reset(self, client_key: str | None = None) -> None:
        with self._lock:
            if client_key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(client_key, None)
