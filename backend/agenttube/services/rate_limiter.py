from __future__ import annotations

import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import time


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """Per-key request log over a trailing window.

    Keys whose log empties out are dropped, so memory follows the number of keys
    active within one window rather than every key ever seen.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time,
    ) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._clock = clock
        self._lock = Lock()
        self._request_logs: dict[str, deque[float]] = {}

    def take(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            self._evict_idle_keys(now)
            request_log = self._request_logs.setdefault(key, deque())
            if len(request_log) < self._max_requests:
                request_log.append(now)
                return RateLimitDecision(
                    allowed=True,
                    limit=self._max_requests,
                    remaining=self._max_requests - len(request_log),
                    retry_after_seconds=0,
                )

            oldest_expires_at = request_log[0] + self._window_seconds
            return RateLimitDecision(
                allowed=False,
                limit=self._max_requests,
                remaining=0,
                retry_after_seconds=max(1, math.ceil(oldest_expires_at - now)),
            )

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._request_logs)

    def _evict_idle_keys(self, now: float) -> None:
        cutoff = now - self._window_seconds
        for key in list(self._request_logs):
            request_log = self._request_logs[key]
            while request_log and request_log[0] <= cutoff:
                request_log.popleft()
            if not request_log:
                del self._request_logs[key]
