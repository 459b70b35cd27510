from __future__ import annotations

import pytest

from stream_notification_engine.adapters.event_bus import HANDLER_ERROR_TOPIC, InProcessEventBus


@pytest.mark.asyncio
async def test_publish_reaches_sync_and_async_handlers() -> None:
    bus = InProcessEventBus()
    seen: list[tuple[str, int]] = []

    def sync_handler(payload: int) -> None:
        seen.append(("sync", payload))

    async def async_handler(payload: int) -> None:
        seen.append(("async", payload))

    bus.subscribe("topic", sync_handler)
    bus.subscribe("topic", async_handler)
    bus.subscribe("topic", sync_handler)
    await bus.publish("topic", 7)

    assert sorted(seen) == [("async", 7), ("sync", 7)]
    assert bus.listener_count("topic") == 2


@pytest.mark.asyncio
async def test_failing_handler_is_isolated_and_reported() -> None:
    bus = InProcessEventBus()
    delivered: list[int] = []
    errors: list[dict] = []

    def broken(_: int) -> None:
        raise RuntimeError("boom")

    bus.subscribe("topic", broken)
    bus.subscribe("topic", delivered.append)
    bus.subscribe(HANDLER_ERROR_TOPIC, errors.append)
    await bus.publish("topic", 1)

    assert delivered == [1]
    assert errors[0]["topic"] == "topic"
    assert str(errors[0]["error"]) == "boom"
    assert bus.get_stats()["handler_errors"] == 1


@pytest.mark.asyncio
async def test_unsubscribe_and_emit_drain() -> None:
    bus = InProcessEventBus()
    delivered: list[str] = []
    unsubscribe = bus.subscribe("topic", delivered.append)

    bus.emit("topic", "first")
    await bus.drain()
    unsubscribe()
    bus.emit("topic", "second")
    await bus.drain()

    assert delivered == ["first"]
    assert bus.get_stats()["published"]["topic"] == 2
