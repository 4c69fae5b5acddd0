"""Sliding window over failed poll ticks."""

import time
from collections import deque
from typing import Callable, Deque

import structlog

logger = structlog.get_logger()


class FailureWindow:
    """Counts poll failures inside a sliding time window.

    The synchronizer never surfaces a single failed tick. The UI may
    observe ``degraded`` to show a connectivity hint once
    ``threshold`` failures happened within ``window_size`` seconds.
    A successful tick clears the window.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_size: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_size = window_size
        self._clock = clock
        self.failures: Deque[float] = deque()

    def _cleanup_old_failures(self, now: float) -> None:
        """Remove failures outside the current window."""
        while self.failures and now - self.failures[0] > self.window_size:
            self.failures.popleft()

    def record_failure(self) -> bool:
        """Track a failed tick; returns whether the window is now degraded."""
        now = self._clock()
        self._cleanup_old_failures(now)
        self.failures.append(now)
        degraded = len(self.failures) >= self.threshold
        if degraded:
            logger.warning(
                "sync_degraded",
                failures=len(self.failures),
                threshold=self.threshold,
                window_size=self.window_size,
            )
        return degraded

    def record_success(self) -> None:
        self.failures.clear()

    @property
    def degraded(self) -> bool:
        self._cleanup_old_failures(self._clock())
        return len(self.failures) >= self.threshold
