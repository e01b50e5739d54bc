"""
Tests for the bounded EventBus.
"""
import asyncio

import pytest

from swarm_treasury.clock import settle
from swarm_treasury.events import EventBus, EventCategory


class TestRingBuffer:
    """Capacity and eviction."""

    def test_ids_are_monotonic(self, bus):
        """Each event gets the next id."""
        first = bus.wake("a", "one")
        second = bus.read("a", "two")
        assert second.id == first.id + 1

    def test_never_exceeds_capacity(self, clock):
        """Appending to a full bus evicts the oldest entry first."""
        bus = EventBus(capacity=3, clock=clock)
        for i in range(5):
            bus.observe("a", f"event {i}")

        assert len(bus) == 3
        assert [e.message for e in bus.all()] == ["event 2", "event 3", "event 4"]

    def test_zero_capacity_rejected(self):
        """Capacity must be at least one."""
        with pytest.raises(ValueError):
            EventBus(capacity=0)

    def test_recent_returns_oldest_first(self, bus):
        """recent(n) returns the last n events in publish order."""
        for i in range(10):
            bus.observe("a", str(i))
        assert [e.message for e in bus.recent(3)] == ["7", "8", "9"]
        assert bus.recent(0) == []

    def test_queries_by_agent_and_kind(self, bus):
        """Events can be filtered by agent and by payload type."""
        bus.wake("a", "x", {"type": "cycle_start"})
        bus.wake("b", "y", {"type": "cycle_start"})
        bus.sleep("a", "z", {"type": "cycle_complete"})

        assert len(bus.by_agent("a")) == 2
        assert [e.agent_id for e in bus.by_kind("cycle_start")] == ["a", "b"]

    def test_timestamps_come_from_clock(self, bus, clock):
        """Event timestamps use the injected clock."""
        event = bus.success("a", "done")
        assert event.timestamp == clock.now()
        assert event.category == EventCategory.SUCCESS


class TestSubscribers:
    """Fan-out semantics."""

    def test_delivery_order_matches_publish_order(self, bus):
        """Subscribers see events in the order they were published."""
        seen = []
        bus.subscribe(lambda e: seen.append(e.id))
        ids = [bus.observe("a", str(i)).id for i in range(5)]
        assert seen == ids

    def test_filters_by_agent_and_category(self, bus):
        """Subscriptions can be narrowed to one agent and set of categories."""
        seen = []
        bus.subscribe(seen.append, agent_id="a", categories=[EventCategory.ALERT])
        bus.alert("a", "hit")
        bus.alert("b", "other agent")
        bus.warn("a", "other category")
        assert [e.message for e in seen] == ["hit"]

    def test_failing_subscriber_does_not_block_others(self, bus):
        """A raising handler is logged and the remaining handlers still run."""
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        event = bus.error("a", "still published")

        assert seen == [event]
        assert bus.all() == [event]

    def test_unsubscribe(self, bus):
        """Both the returned callable and unsubscribe() detach a handler."""
        seen = []
        remove = bus.subscribe(seen.append)
        bus.wake("a", "1")
        remove()
        bus.wake("a", "2")

        bus.subscribe(seen.append)
        bus.unsubscribe(seen.append)
        bus.wake("a", "3")
        assert [e.message for e in seen] == ["1"]

    @pytest.mark.asyncio
    async def test_async_subscriber_is_fire_and_forget(self, bus):
        """Coroutine handlers are scheduled, never awaited by the publisher."""
        seen = []
        release = asyncio.Event()

        async def slow(event):
            await release.wait()
            seen.append(event.id)

        bus.subscribe(slow)
        event = bus.wake("a", "tick")
        assert seen == []

        release.set()
        await settle()
        assert seen == [event.id]

    def test_async_subscriber_without_loop_is_dropped(self, bus):
        """Without a running loop the coroutine is discarded, publishing continues."""
        async def handler(event):
            raise AssertionError("should not run")

        bus.subscribe(handler)
        event = bus.wake("a", "no loop")
        assert bus.all() == [event]
