"""Fixed-window, in-memory rate limiter keyed by caller identity.

One instance per process, created at application startup and passed by
reference (``app.state.rate_limiter``). The clock is injectable for tests.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow at most ``max_requests`` per identifier per ``window_seconds``.

    Expired windows are dropped by ``check`` at most once per window length,
    so callers that stop sending requests do not stay in memory.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def _sweep(self, now: float) -> int:
        # Caller holds the lock
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.window_seconds
        return len(expired)

    def check(self, identifier: str) -> RateLimitDecision:
        """Count one request for identifier and say whether it may proceed."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)

            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[identifier] = window

            if window.count >= self.max_requests:
                return RateLimitDecision(False, 0, window.reset_at)

            window.count += 1
            return RateLimitDecision(True, self.max_requests - window.count, window.reset_at)

    def seconds_until_reset(self, decision: RateLimitDecision) -> float:
        return max(0.0, decision.reset_at - self._clock())

    def cleanup(self) -> int:
        """Drop expired windows now; returns how many were removed."""
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        return len(self._windows)
