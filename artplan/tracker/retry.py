"""
Bounded retry with exponential backoff for tracker calls.

Only TransientError (rate limiting, 5xx, network trouble) is retried; any
other exception propagates on the first attempt. When the budget is spent the
last error is attached to the raised ExternalServiceError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from artplan.lib.config import TrackerConfig
from artplan.lib.errors import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientError(Exception):
    """A failure worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0

    @classmethod
    def from_config(cls, config: TrackerConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_factor=config.backoff_factor,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)


def call_with_retry(operation: str, fn: Callable[[], T], policy: RetryPolicy,
                    sleep: Callable[[float], None] = time.sleep) -> T:
    """Run ``fn`` with up to ``policy.max_retries`` retries.

    Raises:
        ExternalServiceError: after the final transient failure
    """
    last_error: Optional[TransientError] = None
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        try:
            return fn()
        except TransientError as e:
            last_error = e
            if attempt == attempts - 1:
                break
            delay = policy.delay_for(attempt, e.retry_after)
            logger.warning(
                f"[TRACKER] {operation} failed (attempt {attempt + 1}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            sleep(delay)

    raise ExternalServiceError(
        operation,
        str(last_error),
        attempts=attempts,
        status_code=last_error.status_code if last_error else None,
        last_error=last_error,
    ) from last_error
