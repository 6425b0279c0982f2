import asyncio
import os
import time
from collections import defaultdict, deque
from typing import Callable

RATE_LIMITED_PATH_PREFIX = "/expenses/categorize"


class SimpleRateLimiter:
    """
    Sliding-window rate limiter keyed by client identifier (actor and IP).

    Keeps per-key deques of recent request timestamps in process memory, so
    limits apply per service instance. Keys with no requests left in the
    window are dropped at most once per window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        burst: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._burst = max(0, burst)
        self._clock = clock
        self._buckets: dict[str, deque[float]] = defaultdict(deque)
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self._max_requests + self._burst

    @property
    def tracked_clients(self) -> int:
        return len(self._buckets)

    async def allow(self, client_id: str) -> tuple[bool, float]:
        """
        Returns (allowed, retry_after_seconds). When disallowed, retry_after_seconds
        represents how long the client should wait before retrying.
        """

        now = self._clock()
        async with self._lock:
            self._sweep_idle(now)
            bucket = self._buckets[client_id]
            self._evict_old(bucket, now)

            if len(bucket) >= self.limit:
                retry_after = self._window_seconds - (now - bucket[0])
                return False, max(retry_after, 0.0)

            bucket.append(now)
            return True, 0.0

    def remaining(self, client_id: str) -> int:
        bucket = self._buckets.get(client_id)
        if not bucket:
            return self.limit
        return max(self.limit - len(bucket), 0)

    def _evict_old(self, bucket: deque[float], now: float) -> None:
        threshold = now - self._window_seconds
        while bucket and bucket[0] <= threshold:
            bucket.popleft()

    def _sweep_idle(self, now: float) -> None:
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        for client_id in list(self._buckets):
            bucket = self._buckets[client_id]
            self._evict_old(bucket, now)
            if not bucket:
                del self._buckets[client_id]


def is_rate_limited_path(path: str) -> bool:
    """Only the categorization endpoints call out to a paid model."""
    return path.startswith(RATE_LIMITED_PATH_PREFIX)


def rate_limit_key(actor_id: str | None, client_ip: str | None) -> str:
    return f"{actor_id or 'anonymous'}@{client_ip or 'unknown'}"


def build_default_rate_limiter() -> SimpleRateLimiter:
    per_minute = int(os.getenv("CATEGORIZE_RATE_LIMIT_PER_MIN", "30"))
    burst = int(os.getenv("CATEGORIZE_RATE_LIMIT_BURST", "10"))
    return SimpleRateLimiter(max_requests=per_minute, window_seconds=60, burst=burst)
