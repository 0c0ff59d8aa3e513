"""Tests for event bus."""

import asyncio
import pytest

from agentwatch.daemon.bus import EventBus, Event, STATUS_CHANGED


@pytest.mark.asyncio
async def test_event_emit_and_subscribe():
    """Test basic pub/sub functionality."""
    bus = EventBus()
    await bus.start()

    received_events = []

    async def handler(event: Event):
        received_events.append(event)

    bus.subscribe("status.*", handler)

    await bus.emit(Event(
        type=STATUS_CHANGED,
        data={"target": "worker1", "new_state": "working"}
    ))
    await bus.drain()

    assert len(received_events) == 1
    assert received_events[0].type == "status.changed"
    assert received_events[0].data["target"] == "worker1"

    await bus.stop()


@pytest.mark.asyncio
async def test_wildcard_subscription():
    """Test wildcard pattern matching."""
    bus = EventBus()
    await bus.start()

    all_events = []
    recovery_events = []

    async def all_handler(event: Event):
        all_events.append(event)

    async def recovery_handler(event: Event):
        recovery_events.append(event)

    bus.subscribe("*", all_handler)
    bus.subscribe("recovery.*", recovery_handler)

    await bus.emit(Event(type="recovery.attempted", data={}))
    await bus.emit(Event(type="health.changed", data={}))
    await bus.emit(Event(type="recovery.skipped", data={}))
    await bus.drain()

    assert len(all_events) == 3
    assert len(recovery_events) == 2

    await bus.stop()


@pytest.mark.asyncio
async def test_delivery_order():
    """Events reach a subscriber in emission order."""
    bus = EventBus()
    await bus.start()

    seen = []

    async def handler(event: Event):
        await asyncio.sleep(0)
        seen.append(event.data["n"])

    bus.subscribe("status.changed", handler)
    for n in range(10):
        await bus.emit(Event(type=STATUS_CHANGED, data={"n": n}))
    await bus.drain()

    assert seen == list(range(10))
    await bus.stop()


@pytest.mark.asyncio
async def test_sync_handler_and_handler_errors():
    """Sync handlers run off-loop; a failing handler does not stop others."""
    bus = EventBus()
    await bus.start()

    seen = []

    def sync_handler(event: Event):
        seen.append(event.type)

    async def broken_handler(event: Event):
        raise RuntimeError("boom")

    bus.subscribe("health.changed", sync_handler)
    bus.subscribe("health.changed", broken_handler)
    await bus.emit(Event(type="health.changed", data={}))
    await bus.drain()

    assert seen == ["health.changed"]
    assert bus.get_stats()["handler_errors"] == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_bound_method_subscription():
    """Bound methods stay subscribed while their owner is alive."""

    class Counter:
        def __init__(self):
            self.count = 0

        async def on_event(self, event: Event):
            self.count += 1

    bus = EventBus()
    await bus.start()
    counter = Counter()
    bus.subscribe("completion.detected", counter.on_event)

    await bus.emit(Event(type="completion.detected", data={}))
    await bus.drain()
    assert counter.count == 1

    bus.unsubscribe("completion.detected", counter.on_event)
    await bus.emit(Event(type="completion.detected", data={}))
    await bus.drain()
    assert counter.count == 1

    await bus.stop()


@pytest.mark.asyncio
async def test_event_queue_full():
    """Test behavior when event queue is full."""
    bus = EventBus(maxsize=2)

    await bus.emit(Event(type="test.1", data={}))
    await bus.emit(Event(type="test.2", data={}))

    # This should be dropped
    await bus.emit(Event(type="test.3", data={}))

    stats = bus.get_stats()
    assert stats['dropped'] == 1
    assert stats['emitted'] == 2


def test_pattern_matching():
    """Test pattern matching logic."""
    bus = EventBus()

    # Exact match
    assert bus._matches_pattern("status.changed", "status.changed")
    assert not bus._matches_pattern("status.changed", "health.changed")

    # Wildcard
    assert bus._matches_pattern("recovery.attempted", "recovery.*")
    assert bus._matches_pattern("task.info_detected", "task.*")
    assert not bus._matches_pattern("recovery.attempted", "health.*")
    assert not bus._matches_pattern("recoveryx.attempted", "recovery.*")

    # Global wildcard
    assert bus._matches_pattern("anything", "*")
    assert bus._matches_pattern("status.changed", "*")
