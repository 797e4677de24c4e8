"""In-process fixed-window rate limiting, per bucket and client."""

import math
import threading
import time
from typing import Callable, Optional

PRUNE_THRESHOLD = 1024


class RateLimiter:
    """Counts requests per `(bucket, client)` in fixed windows.

    Handlers run in FastAPI's threadpool, so counters sit behind a lock.
    State is per process; several workers each enforce their own limit.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str], tuple[int, float]] = {}

    def hit(self, bucket: str, client: str, limit: int) -> Optional[int]:
        """Count one request. Returns seconds until the window resets when over `limit`, else None."""
        if limit <= 0:
            return None

        now = self._clock()
        key = (bucket, client)
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                if len(self._windows) >= PRUNE_THRESHOLD:
                    self._prune(now)
                count, reset_at = 0, now + self.window_seconds

            count += 1
            self._windows[key] = (count, reset_at)
            if count > limit:
                return max(1, math.ceil(reset_at - now))
        return None

    def _prune(self, now: float) -> None:
        for key in [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]:
            del self._windows[key]
