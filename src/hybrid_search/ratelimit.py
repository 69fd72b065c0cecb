"""
Sliding-window request budget for the embedding provider.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from .errors import RateLimited


class RateLimiter:
    """Allow at most ``max_requests`` acquisitions per ``window_seconds``.

    Callers over budget fail fast with :class:`RateLimited` instead of
    queueing. Safe to share between services and threads.
    """

    def __init__(
        self,
        max_requests: int,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    def acquire(self, cost: int = 1) -> None:
        """Reserve *cost* requests or raise RateLimited."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) + cost > self.max_requests:
                retry_after = self.window_seconds - (now - self._calls[0]) if self._calls else 0.0
                raise RateLimited(
                    f"Embedding provider budget of {self.max_requests} requests "
                    f"per {self.window_seconds:g}s exceeded",
                    retry_after_seconds=round(max(retry_after, 0.0), 3),
                )
            self._calls.extend([now] * cost)

    @property
    def remaining(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return self.max_requests - len(self._calls)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
