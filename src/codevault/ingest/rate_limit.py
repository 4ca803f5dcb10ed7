"""Fixed-window rate limiter, one window per operation key."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

log = structlog.get_logger()


class RateLimitExceeded(RuntimeError):
    """Raised by RateLimiter.acquire(wait=False) when the window is spent."""

    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(
            f"Rate limit exceeded for {key}. Please wait {math.ceil(retry_after)} seconds."
        )
        self.key = key
        self.retry_after = retry_after


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow at most *max_calls* per *window_seconds* for each key.

    A window starts with the first call for a key and resets once it has
    elapsed. Instances are independent; share one deliberately when several
    clients draw on the same provider quota.

    Args:
        max_calls: Calls allowed per window.
        window_seconds: Window length.
        clock: Monotonic time source.
        sleep: Called to wait out a spent window.
    """

    def __init__(
        self,
        max_calls: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str = "default", wait: bool = True) -> float:
        """Take one call from *key*'s budget.

        Args:
            key: Logical operation identifier.
            wait: Block until the window resets instead of raising.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitExceeded: If the budget is spent and *wait* is False.
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                window = self._windows.get(key)
                if window is None or now >= window.reset_at:
                    self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                    return waited
                if window.count < self.max_calls:
                    window.count += 1
                    return waited
                remaining = window.reset_at - now
            if not wait:
                raise RateLimitExceeded(key, remaining)
            log.info("rate_limit.wait", key=key, seconds=round(remaining, 2))
            self._sleep(remaining)
            waited += remaining

    def remaining(self, key: str = "default") -> int:
        """Calls left in *key*'s current window."""
        with self._lock:
            window = self._windows.get(key)
            if window is None or self._clock() >= window.reset_at:
                return self.max_calls
            return self.max_calls - window.count
