"""
Client-side request budget for the tracker API.

Tracks requests in a sliding window so the client slows down before the
server starts refusing calls. Server-reported budgets (X-RateLimit-* headers)
tighten the local one when they are lower.
"""

import logging
import time
from collections import deque
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` per ``window_seconds``."""

    def __init__(self, max_requests: int = 180, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 wall_clock: Callable[[], float] = time.time):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock
        self._requests: deque[float] = deque()
        self._blocked_until: Optional[float] = None

    def _purge(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    @property
    def in_window(self) -> int:
        self._purge(self._clock())
        return len(self._requests)

    @property
    def remaining(self) -> int:
        return max(0, self.max_requests - self.in_window)

    def wait_time(self) -> float:
        """Seconds until the next request may be sent."""
        now = self._clock()
        self._purge(now)
        wait = 0.0
        if self._blocked_until is not None and self._blocked_until > now:
            wait = self._blocked_until - now
        if len(self._requests) >= self.max_requests:
            wait = max(wait, self._requests[0] + self.window_seconds - now)
        return wait

    def acquire(self) -> float:
        """Block until a request slot is free, record it, return seconds waited."""
        waited = 0.0
        wait = self.wait_time()
        while wait > 0:
            logger.info(f"[TRACKER] Rate limit reached, waiting {wait:.1f}s")
            self._sleep(wait)
            waited += wait
            wait = self.wait_time()
        self._blocked_until = None
        self._requests.append(self._clock())
        return waited

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Honour the server's view of the budget when it is exhausted."""
        remaining = headers.get("X-RateLimit-Remaining")
        reset = headers.get("X-RateLimit-Reset")
        if remaining is None:
            return
        try:
            remaining_count = int(remaining)
        except ValueError:
            logger.debug(f"Ignoring malformed X-RateLimit-Remaining: {remaining}")
            return
        if remaining_count > 0 or reset is None:
            return
        try:
            reset_in = max(0.0, float(reset) - self._wall_clock())
        except ValueError:
            logger.debug(f"Ignoring malformed X-RateLimit-Reset: {reset}")
            return
        self._blocked_until = self._clock() + reset_in
        logger.warning(f"[TRACKER] Server budget exhausted, pausing {reset_in:.0f}s")
