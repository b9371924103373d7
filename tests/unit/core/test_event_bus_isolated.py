import pytest
import asyncio
from core.event_bus import EventBus

@pytest.mark.asyncio
async def test_event_bus_basic():
    bus = EventBus()
    received = []

    async def handler(data):
        received.append(data)

    bus.subscribe("lifecycle.loaded", handler)
    await bus.publish("lifecycle.loaded", {"instance_id": "a"}, wait=True)

    assert len(received) == 1
    assert received[0]["instance_id"] == "a"

@pytest.mark.asyncio
async def test_event_bus_unsubscribe_handle():
    bus = EventBus()
    received = []

    unsubscribe = bus.subscribe("warning.show", received.append)
    unsubscribe()
    unsubscribe()
    await bus.publish("warning.show", "no-internet", wait=True)

    assert received == []

@pytest.mark.asyncio
async def test_event_bus_safe_execute_reports_to_error_hook():
    bus = EventBus()
    hooked = []

    async def failing_handler(data):
        raise ValueError("Boom")

    bus.subscribe("test", failing_handler)
    bus.set_error_hook(lambda exc, ctx: hooked.append((type(exc), ctx["event_type"])))

    # should not raise even if wait=False (default)
    await bus.publish("test", "data")
    await bus.drain()

    assert hooked == [(ValueError, "test")]

@pytest.mark.asyncio
async def test_event_bus_wait_propagates_errors():
    bus = EventBus()

    def failing_handler(data):
        raise ValueError("Boom")

    bus.subscribe("test", failing_handler)
    with pytest.raises(ValueError):
        await bus.publish("test", "data", wait=True)


@pytest.mark.asyncio
async def test_event_bus_only_matching_listeners_run():
    bus = EventBus()
    received = []

    bus.subscribe("lifecycle.loaded", received.append)
    await bus.publish("lifecycle.signed-out", {"clear_data": False}, wait=True)
    await bus.publish("nobody.listens")
    await bus.drain()

    assert received == []

@pytest.mark.asyncio
async def test_event_bus_drain_waits_for_async_handlers():
    bus = EventBus()
    done = []

    async def slow_handler(data):
        await asyncio.sleep(0.01)
        done.append(data)

    bus.subscribe("warning.show", slow_handler)
    await bus.publish("warning.show", "no-internet")
    await bus.drain()

    assert done == ["no-internet"]
