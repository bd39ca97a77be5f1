"""
Delivery Pipeline

Moves queued events to the server in batches with bounded delay.

    idle --send--> sending --ok--> idle
                      |
                      +--fail--> backoff_wait --delay--> sending
                      |
                      +--fail (max retries)--> circuit_open --cooldown--> idle

A failed batch is parked in `retry_queue` and put back at the front of the
queue after `base_retry_delay * 2**retry_count`. Once `max_retries`
consecutive sends have failed the breaker opens and suppresses every send
for `circuit_cooldown`; the parked events are re-queued when it closes.

All state is mutated from the event loop only, so no locking is needed.
"""

import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .schema import COMMON_FIELDS, utc_now_iso

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any], List[Dict[str, Any]]], Awaitable[Any]]

BACKPRESSURE_FACTOR = 3


class PipelineState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    BACKOFF_WAIT = "backoff_wait"
    CIRCUIT_OPEN = "circuit_open"


def compress_batch(events: List[Dict[str, Any]], customer_id: str) -> Dict[str, Any]:
    """
    Factor identity fields into a `common` header.

    A field moves to the header only when every event carries the same value;
    a batch that spans an identity change keeps the values on each event.
    """
    first = events[0] if events else {}
    shared = [
        name for name in COMMON_FIELDS
        if events and all(name in event and event[name] == first[name] for event in events)
    ]
    common = {name: first[name] for name in shared}
    common.setdefault("customerId", customer_id)
    return {
        "common": common,
        "events": [
            {k: v for k, v in event.items() if k not in shared}
            for event in events
        ],
    }


class DeliveryPipeline:
    """Queue, batch, compress, transmit and retry"""

    def __init__(
        self,
        send: Sender,
        customer_id: str = "1",
        batch_size: int = 25,
        batch_interval: float = 12.0,
        max_retries: int = 3,
        base_retry_delay: float = 1.0,
        circuit_cooldown: float = 30.0,
        compression_enabled: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time
    ):
        self._send = send
        self.customer_id = customer_id
        self.batch_size = batch_size
        self.batch_interval = batch_interval
        self.max_retries = max_retries
        self.base_retry_delay = base_retry_delay
        self.circuit_cooldown = circuit_cooldown
        self.compression_enabled = compression_enabled
        self._sleep = sleep
        self._clock = clock

        self.queue: List[Dict[str, Any]] = []
        self.retry_queue: List[Dict[str, Any]] = []
        self.retry_count = 0
        self.circuit_open = False
        self.state = PipelineState.IDLE

        self.events_processed = 0
        self.batches_sent = 0
        self.errors = 0
        self.last_batch_time = 0
        self.cross_domain_syncs = 0

        self._interval_task: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.Task] = set()
        self._closed = False

    def enqueue(self, event: Dict[str, Any]):
        """
        Queue an event. Reaching BACKPRESSURE_FACTOR x batch size triggers an
        out-of-band send on the running loop.
        """
        self.queue.append(event)
        self.events_processed += 1
        if len(self.queue) >= self.batch_size * BACKPRESSURE_FACTOR:
            self._spawn(self.send_batch())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def _build_payload(self, batch: List[Dict[str, Any]]) -> Dict[str, Any]:
        events = compress_batch(batch, self.customer_id) if self.compression_enabled else batch
        return {
            "events": events,
            "batchId": secrets.token_hex(16),
            "timestamp": utc_now_iso(),
        }

    async def send_batch(self) -> bool:
        """
        Transmit up to one batch. Returns True on success, False when nothing
        was sent or the send failed.
        """
        if not self.queue or self.circuit_open:
            return False

        batch = self.queue[:self.batch_size]
        del self.queue[:self.batch_size]
        payload = self._build_payload(batch)

        self.state = PipelineState.SENDING
        try:
            await self._send(payload, batch)
        except Exception as e:
            self._on_failure(batch, e)
            return False

        self.retry_count = 0
        self.circuit_open = False
        self.state = PipelineState.IDLE
        self.batches_sent += 1
        self.last_batch_time = int(self._clock() * 1000)
        return True

    def _on_failure(self, batch: List[Dict[str, Any]], error: Exception):
        self.errors += 1
        self.retry_queue.extend(batch)

        delay = self.base_retry_delay * (2 ** self.retry_count)
        self.retry_count += 1

        if self._closed:
            return

        if self.retry_count >= self.max_retries:
            logger.warning(f"Batch send failed {self.retry_count} times, opening circuit: {error}")
            self.circuit_open = True
            self.state = PipelineState.CIRCUIT_OPEN
            self._spawn(self._close_circuit_after(self.circuit_cooldown))
            return

        logger.info(f"Batch send failed, retrying in {delay:.1f}s: {error}")
        self.state = PipelineState.BACKOFF_WAIT
        self._spawn(self._retry_after(delay))

    async def _retry_after(self, delay: float):
        await self._sleep(delay)
        retry_batch = self.retry_queue[:self.batch_size]
        del self.retry_queue[:self.batch_size]
        if retry_batch:
            self.queue[0:0] = retry_batch
            await self.send_batch()

    async def _close_circuit_after(self, cooldown: float):
        await self._sleep(cooldown)
        self.circuit_open = False
        self.retry_count = 0
        self.state = PipelineState.IDLE
        if self.retry_queue:
            self.queue[0:0] = self.retry_queue
            self.retry_queue = []
        logger.info("Circuit closed, sending resumes")

    async def _interval_loop(self):
        while True:
            await self._sleep(self.batch_interval)
            await self.send_batch()

    def start(self):
        """Send on a fixed interval from the running loop"""
        self._closed = False
        if self._interval_task is None or self._interval_task.done():
            self._interval_task = asyncio.get_running_loop().create_task(self._interval_loop())

    async def flush(self) -> int:
        """Drain the queue now; stops at the first failed send"""
        sent = 0
        while self.queue and not self.circuit_open:
            if not await self.send_batch():
                break
            sent += 1
        return sent

    def _requeue_parked(self):
        """Put events waiting out a backoff back at the front of the queue"""
        if self.retry_queue and not self.circuit_open:
            self.queue[0:0] = self.retry_queue
            self.retry_queue = []

    async def on_page_hide(self) -> int:
        self._requeue_parked()
        return await self.flush() if self.queue else 0

    async def on_unload(self) -> int:
        self._requeue_parked()
        return await self.flush() if self.queue else 0

    async def close(self):
        """Cancel timers, then make a final flush attempt"""
        self._closed = True
        tasks = list(self._timers)
        if self._interval_task is not None:
            tasks.append(self._interval_task)
            self._interval_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timers.clear()
        self._requeue_parked()
        await self.flush()

    def metrics(self) -> Dict[str, Any]:
        return {
            "eventsProcessed": self.events_processed,
            "batchesSent": self.batches_sent,
            "errors": self.errors,
            "lastBatchTime": self.last_batch_time,
            "crossDomainSyncs": self.cross_domain_syncs,
            "queueSize": len(self.queue),
            "retryQueueSize": len(self.retry_queue),
            "state": self.state.value,
        }
