"""
In-memory sliding-window limiter for job starts.

Keeps the monotonic timestamps of recent starts; a start is granted while
fewer than `max_starts` fall inside the last `window_seconds`. When the
window is full the caller is told exactly how long to wait for the oldest
start to age out.
"""

import time
import threading
from collections import deque
from typing import Callable, Tuple

DEFAULT_MAX_STARTS = 5
DEFAULT_WINDOW_SECONDS = 1.0


class SlidingWindowLimiter:
    def __init__(
        self,
        max_starts: int = DEFAULT_MAX_STARTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._starts: deque[float] = deque()

    def _trim(self, now: float):
        cutoff = now - self.window_seconds
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()

    def try_acquire(self) -> float:
        """
        Record a start if the window has room.

        Returns 0 when granted, otherwise the seconds until a start frees up
        (nothing is recorded in that case).
        """
        with self._lock:
            now = self._clock()
            self._trim(now)
            if len(self._starts) < self.max_starts:
                self._starts.append(now)
                return 0.0
            return max(self._starts[0] + self.window_seconds - now, 0.0) or 1e-3

    def status(self) -> Tuple[int, int]:
        """(starts in the current window, remaining)"""
        with self._lock:
            self._trim(self._clock())
            used = len(self._starts)
            return used, self.max_starts - used
