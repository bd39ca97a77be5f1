"""Fixed-window request counter per client address."""

import asyncio
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..errors import RateLimitError


class RateLimiter:
    """Allows `max_requests` per `window_seconds` for each key"""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (window start, count)
        self._counters: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._reset_task: Optional[asyncio.Task] = None

    def hit(self, key: str) -> int:
        """
        Count one request for `key`.

        Returns the remaining allowance; raises RateLimitError once the
        window is exhausted.
        """
        now = self._clock()
        with self._lock:
            started, count = self._counters.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_requests:
                retry_after = max(1, int(self.window_seconds - (now - started) + 0.999))
                raise RateLimitError(retry_after)
            self._counters[key] = (started, count + 1)
            return self.max_requests - count - 1

    def reset(self):
        with self._lock:
            self._counters.clear()

    def prune(self):
        now = self._clock()
        with self._lock:
            stale = [k for k, (started, _) in self._counters.items()
                     if now - started >= self.window_seconds]
            for key in stale:
                del self._counters[key]

    async def _prune_loop(self):
        while True:
            await asyncio.sleep(self.window_seconds)
            self.prune()

    def start(self):
        if self._reset_task is None or self._reset_task.done():
            self._reset_task = asyncio.get_running_loop().create_task(self._prune_loop())

    async def stop(self):
        if self._reset_task:
            self._reset_task.cancel()
            try:
                await self._reset_task
            except asyncio.CancelledError:
                pass
            self._reset_task = None
