from __future__ import annotations

import pytest

from stream_notification_engine.application.router import PlatformEventRouter
from stream_notification_engine.application.factories.twitch import TwitchEventFactory
from stream_notification_engine.domain.events import EventType
from stream_notification_engine.errors import DispatchError
from stream_notification_engine.ports.bus import PLATFORM_EVENT_TOPIC

from conftest import CaptureBus, make_config


class RecordingChat:
    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []

    async def handle_chat_message(self, platform, event):
        self.calls.append((platform, event))
        return {"success": True}


class RecordingNotifications:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str, object]] = []

    async def handle_notification(self, notification_type, platform, data):
        if self.fail:
            raise RuntimeError("queue exploded")
        self.calls.append((notification_type, platform, data))


def _router(notifications=None, runtime_handlers=None, error_handler=None, **sections):
    bus = CaptureBus()
    chat = RecordingChat()
    notifications = notifications or RecordingNotifications()
    router = PlatformEventRouter(
        bus,
        make_config(**sections),
        chat,
        notifications,
        runtime_handlers=runtime_handlers,
        error_handler=error_handler,
    )
    return router, bus, chat, notifications


@pytest.mark.asyncio
async def test_routes_chat_and_notifications_from_bus() -> None:
    router, bus, chat, notifications = _router()
    router.start()

    await bus.publish(
        PLATFORM_EVENT_TOPIC,
        {"type": EventType.CHAT_MESSAGE, "platform": "twitch", "data": {"message": "hi"}},
    )
    await bus.publish(
        PLATFORM_EVENT_TOPIC,
        {"type": EventType.FOLLOW, "platform": "tiktok", "data": {"username": "f"}},
    )

    assert chat.calls == [("twitch", {"message": "hi"})]
    assert notifications.calls == [(EventType.FOLLOW, "tiktok", {"username": "f"})]
    assert router.get_stats()["dispatched"] == 2


@pytest.mark.asyncio
async def test_canonical_event_objects_are_routed() -> None:
    router, _, chat, _ = _router()
    event = TwitchEventFactory(now_iso=lambda: "2024-01-01T00:00:00.000Z").create_chat_message(
        {"userId": "u1", "username": "a", "message": "yo", "timestamp": "2024-01-01T00:00:00Z"}
    )
    await router.handle_event(event)
    assert chat.calls == [("twitch", event)]


@pytest.mark.asyncio
async def test_flat_payload_is_parsed() -> None:
    router, _, _, notifications = _router()
    await router.handle_event(
        {
            "type": "platform:raid",
            "platform": "twitch",
            "userId": "r1",
            "username": "raider",
            "viewerCount": 12,
            "timestamp": "2024-01-01T00:00:00Z",
            "metadata": {"platform": "twitch", "correlationId": "c1"},
        }
    )
    ((notification_type, platform, event),) = notifications.calls
    assert notification_type == EventType.RAID
    assert platform == "twitch"
    assert event.viewer_count == 12


@pytest.mark.asyncio
async def test_legacy_alias_reaches_notification_manager() -> None:
    router, _, _, notifications = _router()
    await router.handle_event({"type": "subscription", "platform": "twitch", "data": {}})
    assert notifications.calls == [("subscription", "twitch", {})]


@pytest.mark.asyncio
async def test_disabled_notification_is_gated() -> None:
    router, _, _, notifications = _router(general={"raids_enabled": False})
    await router.handle_event({"type": EventType.RAID, "platform": "twitch", "data": {}})
    assert notifications.calls == []
    assert router.get_stats()["gated"] == 1


@pytest.mark.asyncio
async def test_invalid_and_unknown_events_are_rejected() -> None:
    router, _, chat, notifications = _router()
    await router.handle_event("not a mapping")
    await router.handle_event({"platform": "twitch", "data": {}})
    await router.handle_event({"type": "platform:bogus", "platform": "twitch", "data": {}})
    assert chat.calls == []
    assert notifications.calls == []
    assert router.get_stats()["rejected"] == 3


@pytest.mark.asyncio
async def test_runtime_handlers_receive_data() -> None:
    seen: list[object] = []

    async def on_status(data) -> None:
        seen.append(data)

    router, _, _, _ = _router(runtime_handlers={EventType.STREAM_STATUS: on_status})
    await router.handle_event({"type": EventType.STREAM_STATUS, "platform": "twitch", "data": {"x": 1}})
    await router.handle_event({"type": EventType.CONNECTION, "platform": "twitch", "data": {}})
    assert seen == [{"x": 1}]


@pytest.mark.asyncio
async def test_handler_errors_are_swallowed_and_reported() -> None:
    errors: list[DispatchError] = []
    router, _, _, _ = _router(
        notifications=RecordingNotifications(fail=True), error_handler=errors.append
    )
    await router.handle_event({"type": EventType.GIFT, "platform": "tiktok", "data": {}})
    assert len(errors) == 1
    assert "queue exploded" in str(errors[0])
    assert router.get_stats()["errors"] == 1


@pytest.mark.asyncio
async def test_dispose_unsubscribes() -> None:
    router, bus, chat, _ = _router()
    router.start()
    assert router.is_subscribed is True
    router.dispose()
    await bus.publish(PLATFORM_EVENT_TOPIC, {"type": EventType.CHAT_MESSAGE, "platform": "x", "data": {}})
    assert chat.calls == []
    assert router.is_subscribed is False
