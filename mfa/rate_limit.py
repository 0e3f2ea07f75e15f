"""
Per-key attempt throttling.

Each key (``"<user_id>:verify"``, ``"<user_id>:send"``) may make one attempt
per window; the window is ``60 / rate_limit_per_minute`` seconds.
"""

import time
from typing import Callable, Optional

from core.errors import RateLimitedError


class AttemptRateLimiter:

    def __init__(self, window: float, clock: Callable[[], float] = time.time):
        self.window = window
        self._clock = clock
        self._last_attempt: dict[str, float] = {}

    def retry_after(self, key: str) -> float:
        last = self._last_attempt.get(key)
        if last is None:
            return 0.0
        return max(0.0, self.window - (self._clock() - last))

    def check(self, key: str) -> None:
        """Raise RateLimitedError if ``key`` attempted inside the window."""
        wait = self.retry_after(key)
        if wait > 0:
            raise RateLimitedError(
                f"Too many attempts, retry in {wait:.0f}s",
                retry_after=wait,
            )

    def record(self, key: str) -> None:
        self._last_attempt[key] = self._clock()

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._last_attempt.clear()
        else:
            self._last_attempt.pop(key, None)
