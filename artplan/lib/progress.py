"""
Step-based progress reporting for planning passes.

Progress is counted in completed stages (step n of N). Elapsed time is
recorded per step so a UI can derive an ETA, but no decision is ever taken
on time.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    step: int
    total: int
    stage: str
    status: str                                # started, passed, failed, skipped
    detail: str = ""
    elapsed: float = 0.0

    @property
    def fraction(self) -> float:
        return self.step / self.total if self.total else 1.0

    def __str__(self):
        suffix = f" - {self.detail}" if self.detail else ""
        return f"[{self.step}/{self.total}] {self.stage} {self.status}{suffix}"


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class ProgressReporter:
    """Counts stages and forwards events to an optional callback.

    Callback errors are logged and swallowed: a broken progress display must
    not fail a planning pass.
    """
    total: int
    callback: Optional[ProgressCallback] = None
    events: list[ProgressEvent] = field(default_factory=list)
    _step: int = 0
    _started_at: float = field(default_factory=time.monotonic)

    @property
    def step(self) -> int:
        return self._step

    def start(self, stage: str, detail: str = "") -> None:
        self._emit(ProgressEvent(self._step + 1, self.total, stage, "started", detail,
                                 time.monotonic() - self._started_at))

    def finish(self, stage: str, status: str = "passed", detail: str = "") -> None:
        self._step = min(self._step + 1, self.total)
        self._emit(ProgressEvent(self._step, self.total, stage, status, detail,
                                 time.monotonic() - self._started_at))

    def estimate_remaining(self) -> Optional[float]:
        """Seconds remaining, extrapolated from completed steps. Display only."""
        if self._step == 0:
            return None
        elapsed = time.monotonic() - self._started_at
        return elapsed / self._step * (self.total - self._step)

    def _emit(self, event: ProgressEvent) -> None:
        self.events.append(event)
        logger.info(f"[PLAN] {event}")
        if self.callback is None:
            return
        try:
            self.callback(event)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")


class CancelToken:
    """Cooperative cancellation flag checked between stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
