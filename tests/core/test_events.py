"""Tests for shipyard.core.events -- Event model and InMemoryEventBus."""

import asyncio

import pytest
import pytest_asyncio

from shipyard.core.events import Event, EventBus
from shipyard.core.events.memory import InMemoryEventBus

# ------------------------------------------------------------------ #
# Event model
# ------------------------------------------------------------------ #


class TestEvent:
    def test_defaults(self):
        event = Event(event_type="deployment.status", source="test")
        assert event.payload == {}
        assert event.event_id
        assert event.timestamp.tzinfo is not None

    def test_unique_ids(self):
        assert Event(event_type="x", source="t").event_id != Event(event_type="x", source="t").event_id


class TestEventMatches:
    def test_exact(self):
        event = Event(event_type="deployment.status", source="test")
        assert event.matches("deployment.status") is True
        assert event.matches("deployment.log") is False

    def test_wildcards(self):
        event = Event(event_type="deployment.log", source="test")
        assert event.matches("*") is True
        assert event.matches("deployment.*") is True
        assert event.matches("database.*") is False


# ------------------------------------------------------------------ #
# InMemoryEventBus
# ------------------------------------------------------------------ #


class TestInMemoryEventBus:
    @pytest_asyncio.fixture
    async def bus(self):
        bus = InMemoryEventBus()
        yield bus
        await bus.close()

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryEventBus(), EventBus)

    @pytest.mark.asyncio
    async def test_publish_no_subscribers(self, bus):
        await bus.publish(Event(event_type="deployment.status", source="test"))

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self, bus):
        received = []

        async def handler(event):
            received.append(event)

        sub_id = await bus.subscribe("deployment.*", handler)
        assert sub_id.startswith("sub_")
        await bus.publish(Event(event_type="deployment.status", source="test"))
        await bus.publish(Event(event_type="database.status", source="test"))
        await bus.drain()
        assert [e.event_type for e in received] == ["deployment.status"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        received = []

        async def handler(event):
            received.append(event)

        sub_id = await bus.subscribe("*", handler)
        await bus.unsubscribe(sub_id)
        await bus.publish(Event(event_type="deployment.status", source="test"))
        assert received == []
        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, bus):
        received = []

        async def bad(event):
            raise RuntimeError("subscriber crashed")

        async def good(event):
            received.append(event)

        await bus.subscribe("*", bad)
        await bus.subscribe("*", good)
        await bus.publish(Event(event_type="deployment.log", source="test"))
        await bus.drain()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_closed_bus_drops_events(self, bus):
        received = []

        async def handler(event):
            received.append(event)

        await bus.subscribe("*", handler)
        await bus.close()
        await bus.publish(Event(event_type="deployment.log", source="test"))
        assert received == []
        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_handlers(self, bus):
        release = asyncio.Event()
        received = []

        async def slow(event):
            await release.wait()
            received.append(event.payload["n"])

        await bus.subscribe("*", slow)
        await asyncio.wait_for(
            bus.publish(Event(event_type="deployment.status", source="test", payload={"n": 1})), timeout=1.0
        )
        await bus.publish(Event(event_type="deployment.status", source="test", payload={"n": 2}))
        assert received == []

        with pytest.raises(TimeoutError):
            await bus.drain(timeout=0.05)

        release.set()
        await bus.drain(timeout=1.0)
        assert received == [1, 2]

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_delay_others(self, bus):
        release = asyncio.Event()
        fast = []

        async def stuck(event):
            await release.wait()

        async def quick(event):
            fast.append(event)

        await bus.subscribe("*", stuck)
        await bus.subscribe("*", quick)
        await bus.publish(Event(event_type="deployment.log", source="test"))
        await asyncio.sleep(0.01)
        assert len(fast) == 1
        release.set()
        await bus.drain(timeout=1.0)
