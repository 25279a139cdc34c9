from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict


class RateLimiter:
    """In-memory sliding window limiter keyed by client address."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = max(1, limit)
        self.window = max(1, window_seconds)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep: float | None = None
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Register a submission for ``key``. Returns False when over limit."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            bucket = self._hits.setdefault(key, deque())
            self._expire(bucket, now)
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = None

    def _expire(self, bucket: Deque[float], now: float) -> None:
        while bucket and now - bucket[0] >= self.window:
            bucket.popleft()

    def _sweep(self, now: float) -> None:
        # At most once per window; drops keys whose hits have all expired.
        if self._last_sweep is not None and now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        for key in list(self._hits):
            bucket = self._hits[key]
            self._expire(bucket, now)
            if not bucket:
                del self._hits[key]
