"""
Tests for the Change Queue.

Tests cover:
  - FIFO ordering
  - One event at a time (no overlap)
  - Processor failure doesn't crash the worker
  - drain() / stop() / counters
"""

import asyncio

import pytest

from medexchange.messaging.models import ChangeEvent, ChangeType
from medexchange.messaging.queue import ChangeQueue
from medexchange.messaging.tests.fakes import ME, OTHER, make_message


def _insert(message_id: str) -> ChangeEvent:
    return ChangeEvent(change_type=ChangeType.INSERT, message=make_message(message_id, OTHER, ME))


class TestChangeQueue:

    @pytest.mark.asyncio
    async def test_events_processed_in_order(self):
        processed = []

        async def processor(event):
            processed.append(event.message.id)
            await asyncio.sleep(0.01)

        queue = ChangeQueue(processor=processor)
        await queue.start()
        for message_id in ("m1", "m2", "m3"):
            await queue.enqueue(_insert(message_id))
        await queue.drain()
        await queue.stop()

        assert processed == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_no_overlapping_processing(self):
        active = 0
        peak = 0

        async def processor(event):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.005)
            active -= 1

        queue = ChangeQueue(processor=processor)
        await queue.start()
        for i in range(5):
            await queue.enqueue(_insert(f"m{i}"))
        await queue.drain()
        await queue.stop()

        assert peak == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_worker(self):
        processed = []

        async def processor(event):
            if event.message.id == "bad":
                raise RuntimeError("boom")
            processed.append(event.message.id)

        queue = ChangeQueue(processor=processor)
        await queue.start()
        await queue.enqueue(_insert("bad"))
        await queue.enqueue(_insert("good"))
        await queue.drain()
        await queue.stop()

        assert processed == ["good"]
        assert queue.failed_count == 1
        assert queue.processed_count == 1

    @pytest.mark.asyncio
    async def test_depth_before_start(self):
        async def processor(event):
            pass

        queue = ChangeQueue(processor=processor)
        await queue.enqueue(_insert("m1"))
        await queue.enqueue(_insert("m2"))
        assert queue.depth == 2
        assert not queue.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_resets(self):
        async def processor(event):
            pass

        queue = ChangeQueue(processor=processor)
        await queue.start()
        await queue.start()
        assert queue.running

        await queue.stop()
        assert not queue.running
