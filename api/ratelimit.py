"""
api/ratelimit.py — Sliding-window Rate Limiter
================================================
Each (scope, client) pair gets its own window of call timestamps.
Anything older than the window is evicted before the count is checked,
and windows of clients that went quiet are dropped once per window length.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class RateLimiter:

    def __init__(self, window_seconds: float = 60.0, clock: Optional[Callable[[], float]] = None):
        self.window_seconds = window_seconds
        self.clock = clock or time.monotonic
        self._windows: Dict[str, Deque[float]] = {}
        self._last_sweep = self.clock()
        self._lock = threading.Lock()

    def hit(self, key: str, max_calls: int) -> bool:
        """Record a call if it fits in the window. False means the caller is over the limit."""
        now = self.clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
            window = self._windows.setdefault(key, deque())
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= max_calls:
                if not window:
                    del self._windows[key]
                return False
            window.append(now)
            return True

    def _sweep(self, cutoff: float):
        stale = [key for key, window in self._windows.items() if not window or window[-1] <= cutoff]
        for key in stale:
            del self._windows[key]
        self._last_sweep = cutoff + self.window_seconds

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest call in the window expires."""
        with self._lock:
            window = self._windows.get(key)
            if not window:
                return 0
            return max(1, int(window[0] + self.window_seconds - self.clock()) + 1)

    def reset(self, key: Optional[str] = None):
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
