"""
Change Queue: serialises realtime change events for one hospital session.

Realtime callbacks only enqueue.  A single worker task hands events to the
reconciliation processor one at a time, FIFO, so two events can never be
applied concurrently.  A failing event is logged and the worker moves on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from medexchange.messaging.models import ChangeEvent

logger = logging.getLogger("messaging.queue")

# Type for the callback the queue calls to process each event
ChangeProcessor = Callable[[ChangeEvent], Awaitable[Any]]


class ChangeQueue:
    """
    One asyncio.Queue plus the worker that drains it.

    Usage:
        queue = ChangeQueue(processor=engine.apply_change)
        await queue.start()
        await queue.enqueue(event)
        ...
        await queue.stop()
    """

    def __init__(
        self,
        processor: ChangeProcessor,
        slow_event_seconds: float = 5.0,
    ) -> None:
        self._processor = processor
        self._slow_event_seconds = slow_event_seconds
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._running = False
        self.processed_count = 0
        self.failed_count = 0

    # ── Public API ──

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._worker_loop())
        logger.info("ChangeQueue started")

    async def stop(self) -> None:
        """Stop the worker.  Events still queued are dropped."""
        self._running = False
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        logger.info("ChangeQueue stopped (processed=%d failed=%d)",
                    self.processed_count, self.failed_count)

    async def enqueue(self, event: ChangeEvent) -> None:
        await self._queue.put(event)
        logger.debug("Enqueued %s %s (depth=%d)",
                     event.change_type.value, event.message.id, self._queue.qsize())

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    # ── Internal ──

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                event = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                t0 = time.monotonic()
                await self._processor(event)
                self.processed_count += 1
                elapsed = time.monotonic() - t0
                if elapsed > self._slow_event_seconds:
                    logger.warning(
                        "Slow change: %s %s took %.1fs",
                        event.change_type.value, event.message.id, elapsed,
                    )
            except Exception as exc:
                self.failed_count += 1
                logger.error(
                    "Error applying %s for message %s: %s",
                    event.change_type.value, event.message.id, exc,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
