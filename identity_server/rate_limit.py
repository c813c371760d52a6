"""
Rate limiting for POST /account/login and POST /connect/token.
Sliding one-minute window per key (e.g. "token:<ip>"), held in process memory.
Keys with no hits inside the window are dropped so the table only holds recent callers.
"""
import math
import threading
import time
from collections import deque
from typing import Callable

from identity_server.errors import OAuthError

WINDOW_SECONDS = 60


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int = WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def hit(self, key: str, limit: int) -> int | None:
        """
        Record a request for key. Returns None when it is within limit, else the
        Retry-After seconds (>= 1) and nothing is recorded. limit <= 0 disables the check.
        """
        if limit <= 0:
            return None
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.get(key)
            if hits is None:
                hits = self._hits[key] = deque()
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return max(1, math.ceil(self.window_seconds - (now - hits[0])))
            hits.append(now)
            return None

    def _sweep(self, cutoff: float) -> None:
        # Caller holds the lock
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


_limiter = SlidingWindowLimiter()


def enforce(key: str, limit: int, limiter: SlidingWindowLimiter | None = None) -> None:
    """Raise 429 with Retry-After when key is over its limit."""
    retry_after = (limiter or _limiter).hit(key, limit)
    if retry_after is not None:
        raise OAuthError(
            "slow_down",
            "Too many requests",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )


def reset() -> None:
    _limiter.clear()
