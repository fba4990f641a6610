"""
In-memory fixed-window rate limiter.

Each key (e.g. "mail:search:<user>:<account>") gets an independent counter.
A denied check returns immediately; the caller rejects the request.
Expired keys are reclaimed lazily once the number of tracked keys passes
max_entries, or on demand through cleanup().
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .cache import KeyedLocks

logger = logging.getLogger(__name__)

MAX_REQUESTS_PER_WINDOW = 30
WINDOW_SECONDS = 60.0
MAX_ENTRIES = 10000


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


def rate_limit_key(operation: str, user_id: str, account_id: str) -> str:
    return f"mail:{operation}:{user_id}:{account_id}"


class RateLimiter:
    """
    Fixed-window counter per key.

    Args:
        max_requests: Calls allowed per window
        window_seconds: Window length
        max_entries: Tracked-key count above which expired keys are swept
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_requests: int = MAX_REQUESTS_PER_WINDOW,
        window_seconds: float = WINDOW_SECONDS,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock_for = KeyedLocks()

    def __len__(self) -> int:
        return len(self._windows)

    def check(self, key: str) -> RateLimitResult:
        """Count one call against key and report whether it is allowed."""
        if len(self._windows) > self.max_entries:
            self.cleanup()

        now = self._clock()
        with self._lock_for(key):
            window = self._windows.get(key)

            # No entry or window elapsed: start a fresh window with this call
            if window is None or window.reset_at <= now:
                self._windows[key] = RateLimitWindow(count=1, reset_at=now + self.window_seconds)
                return RateLimitResult(allowed=True, remaining=self.max_requests - 1)

            if window.count >= self.max_requests:
                return RateLimitResult(allowed=False, remaining=0)

            window.count += 1
            return RateLimitResult(allowed=True, remaining=self.max_requests - window.count)

    def retry_after(self, key: str) -> float:
        """Seconds until key's window resets (0 if not tracked)."""
        window = self._windows.get(key)
        if window is None:
            return 0.0
        return max(0.0, window.reset_at - self._clock())

    def reset(self, key: str) -> None:
        with self._lock_for(key):
            self._windows.pop(key, None)

    def cleanup(self) -> int:
        """Remove expired windows. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key in list(self._windows):
            with self._lock_for(key):
                window = self._windows.get(key)
                if window is not None and window.reset_at <= now:
                    del self._windows[key]
                    removed += 1
        if removed:
            logger.debug(f"Rate limiter reclaimed {removed} expired windows")
        return removed
