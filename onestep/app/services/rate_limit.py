"""
Fixed-window request rate limiting.

The limiter is process-local. Counters are keyed by an opaque string
(typically the client IP) and expire lazily: an expired window is reset
on its next use, and sweep() drops windows nobody touched again.

All mutation happens under a single threading.Lock so the limiter is
safe to share between the event loop and worker threads.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter(Protocol):
    def check(self, key: str) -> RateLimitDecision:
        ...

    def allow(self, key: str) -> bool:
        ...


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        """Count one request against key and report whether it may proceed."""
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self._window_seconds)
                self._windows[key] = window

            if window.count >= self._max_requests:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_at,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self._max_requests - window.count,
                reset_at=window.reset_at,
            )

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def sweep(self) -> int:
        """Drop expired windows. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now >= w.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
