"""Tests for the gateway event bus."""

import asyncio
import time

import pytest

from tool_gateway.api.events import EVENT_PROVIDER_STATE, EventBus


# ---------------------------------------------------------------------------
# TestEventBus
# ---------------------------------------------------------------------------

class TestEventBus:
    """Verify EventBus fan-out."""

    def test_emit_adds_timestamp(self):
        bus = EventBus()
        queue = bus.subscribe()
        before = time.time()
        bus.emit({"event": EVENT_PROVIDER_STATE})
        after = time.time()

        event = queue.get_nowait()
        assert before <= event["timestamp"] <= after

    def test_emit_does_not_mutate_original(self):
        bus = EventBus()
        bus.subscribe()
        original = {"event": EVENT_PROVIDER_STATE}
        bus.emit(original)

        assert "timestamp" not in original

    def test_every_subscriber_gets_event(self):
        bus = EventBus()
        q1, q2 = bus.subscribe(), bus.subscribe()
        bus.emit({"event": EVENT_PROVIDER_STATE, "state": "degraded"})

        assert q1.get_nowait()["state"] == "degraded"
        assert q2.get_nowait()["state"] == "degraded"

    def test_no_history_for_late_subscriber(self):
        bus = EventBus()
        bus.emit({"event": EVENT_PROVIDER_STATE})
        queue = bus.subscribe()

        assert queue.empty()

    def test_full_queue_drops(self):
        bus = EventBus(queue_size=1)
        queue = bus.subscribe()
        bus.emit({"event": "a"})
        bus.emit({"event": "b"})

        assert bus.dropped == 1
        assert queue.get_nowait()["event"] == "a"

    def test_unsubscribe_is_idempotent(self):
        bus = EventBus()
        queue = bus.subscribe()
        assert bus.subscriber_count == 1

        bus.unsubscribe(queue)
        bus.unsubscribe(queue)

        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_subscriber_can_await(self):
        bus = EventBus()
        queue = bus.subscribe()

        async def emit_later():
            await asyncio.sleep(0.01)
            bus.emit({"event": EVENT_PROVIDER_STATE})

        task = asyncio.create_task(emit_later())
        event = await asyncio.wait_for(queue.get(), timeout=1.0)
        await task

        assert event["event"] == EVENT_PROVIDER_STATE
