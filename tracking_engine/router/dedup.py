"""
Time-windowed idempotency filter for inbound events.

The SDK retries whole batches, so an event that was stored before the
network failed will arrive again. Each event is keyed on
(session id, event type, timestamp-as-received) and accepted at most once
per window.
"""

import asyncio
import hashlib
import logging
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def dedup_key(session_id: str, event_type: str, timestamp: Optional[str]) -> str:
    """sha256 over the event triple; a missing timestamp hashes as ''"""
    raw = f"{session_id}:{event_type}:{timestamp if timestamp is not None else ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DedupCache:
    """
    Insert-if-absent cache of event keys with per-key expiry.

    `claim` checks and writes under one lock with no await in between, so two
    concurrent retries of the same event cannot both be accepted.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.window_seconds = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def claim(self, session_id: str, event_type: str, timestamp: Optional[str]) -> bool:
        """
        Returns True when the event is new (and records it), False for a
        duplicate still inside its window.
        """
        key = dedup_key(session_id, event_type, timestamp)
        now = self._clock()
        with self._lock:
            expire_at = self._entries.get(key)
            if expire_at is not None and now < expire_at:
                return False
            self._entries[key] = now + self.window_seconds
            return True

    def release(self, session_id: str, event_type: str, timestamp: Optional[str]):
        """Forget a claimed key, e.g. when storing the event failed"""
        key = dedup_key(session_id, event_type, timestamp)
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Remove expired keys; returns how many were dropped"""
        now = self._clock()
        with self._lock:
            expired = [key for key, expire_at in self._entries.items() if now >= expire_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} keys")
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def start(self):
        """Start the periodic sweep on the running loop"""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
