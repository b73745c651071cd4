"""
Per-user rate limiting for chat turns.

Sliding window: a user may start at most N turns in any 60 seconds.
The limiter is owned by one app instance; several workers each keep
their own window.
"""

import time
from collections import deque
from typing import Callable


WINDOW_SECONDS = 60.0


class RateLimitExceededError(Exception):
    """The user started too many turns in the current window."""

    def __init__(self, limit: int, retry_after: float):
        super().__init__(f"Rate limit exceeded: max {limit} messages per minute")
        self.limit = limit
        self.retry_after = retry_after


class RateLimiter:
    """Sliding-window counter keyed by user id."""

    def __init__(
        self,
        max_requests_per_minute: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests_per_minute
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def _window(self, user_id: str, now: float) -> deque[float]:
        hits = self._hits.get(user_id)
        if hits is None:
            return deque()
        while hits and now - hits[0] >= WINDOW_SECONDS:
            hits.popleft()
        if not hits:
            del self._hits[user_id]
        return hits

    def _sweep(self, now: float) -> None:
        """Forget users with no hits left in the window, once per window."""
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        self._last_sweep = now
        for user_id in list(self._hits):
            self._window(user_id, now)

    def remaining(self, user_id: str) -> int:
        return max(self.max_requests - len(self._window(user_id, self._clock())), 0)

    def check(self, user_id: str) -> None:
        """
        Record one request.

        Raises:
            RateLimitExceededError: The user is over the limit
        """
        now = self._clock()
        self._sweep(now)
        hits = self._window(user_id, now)
        if len(hits) >= self.max_requests:
            raise RateLimitExceededError(
                self.max_requests,
                retry_after=round(WINDOW_SECONDS - (now - hits[0]), 1),
            )
        hits.append(now)
        self._hits[user_id] = hits
