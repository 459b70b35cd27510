from __future__ import annotations

import pytest

from stream_notification_engine.adapters.event_bus import InProcessEventBus
from stream_notification_engine.application.display_queue import DisplayQueue, run_handcam_glow
from stream_notification_engine.application.vfx import VFXCommandService
from stream_notification_engine.config import HandcamSettings
from stream_notification_engine.domain.display import DisplayItem, Priority, VfxConfig
from stream_notification_engine.domain.events import EventType, Platform

from conftest import FakeBroadcaster, FakeClock, FakeEffects, FakeGoals, make_config


def _chat(username: str, message: str, platform: Platform = Platform.TWITCH) -> DisplayItem:
    return DisplayItem(
        type=EventType.CHAT_MESSAGE,
        platform=platform,
        data={"username": username, "user_id": f"id-{username}", "message": message},
    )


def _notification(item_type: str, username: str, **data) -> DisplayItem:
    return DisplayItem(
        type=item_type,
        platform=Platform.TIKTOK,
        data={"username": username, "user_id": f"id-{username}", "display_message": f"{username}!", **data},
    )


def _queue(broadcaster=None, goals=None, bus=None, **sections):
    clock = FakeClock()
    config = make_config(**sections)
    queue = DisplayQueue(broadcaster or FakeBroadcaster(), config, clock, bus=bus, goals=goals)
    return queue, clock


def test_priority_order_is_stable() -> None:
    queue, _ = _queue()
    queue.add_item(_notification(EventType.FOLLOW, "f1"))
    queue.add_item(_notification(EventType.GIFT, "g1", amount=1))
    queue.add_item(_notification(EventType.FOLLOW, "f2"))
    queue.add_item(_notification(EventType.PAYPIGGY, "p1"))
    queue.add_item(_notification(EventType.GIFT, "g2", amount=1))

    order = [(item.type, item.username) for item in queue._queue]
    assert order == [
        (EventType.PAYPIGGY, "p1"),
        (EventType.GIFT, "g1"),
        (EventType.GIFT, "g2"),
        (EventType.FOLLOW, "f1"),
        (EventType.FOLLOW, "f2"),
    ]
    assert queue._queue[0].priority == Priority.MEMBER


def test_new_chat_replaces_queued_chat() -> None:
    queue, _ = _queue()
    queue.add_item(_chat("a", "first"))
    queue.add_item(_notification(EventType.FOLLOW, "f"))
    queue.add_item(_chat("b", "second"))

    assert queue.get_queue_length() == 2
    assert [item.username for item in queue._queue] == ["f", "b"]
    assert queue.last_chat_item.username == "b"


def test_capacity_is_enforced() -> None:
    queue, _ = _queue(display_queue={"auto_process": False, "max_queue_size": 2})
    queue.add_item(_notification(EventType.FOLLOW, "a"))
    queue.add_item(_notification(EventType.FOLLOW, "b"))
    with pytest.raises(ValueError, match=r"Queue at capacity \(2\)"):
        queue.add_item(_notification(EventType.FOLLOW, "c"))


@pytest.mark.asyncio
async def test_last_chat_lingers_after_queue_drains() -> None:
    broadcaster = FakeBroadcaster()
    queue, _ = _queue(broadcaster=broadcaster)
    queue.add_item(_chat("alice", "hello"))
    queue.add_item(_notification(EventType.FOLLOW, "bob"))

    await queue.process_queue()

    assert queue.get_queue_length() == 0
    content = queue.get_current_display_content()
    assert content is not None
    assert content.type == "chat"
    assert content.content == "alice: hello"
    assert content.is_lingering is True
    assert queue.is_item_displayed_to_user("chat") is True
    assert queue.is_item_displayed_to_user(EventType.FOLLOW) is False
    assert broadcaster.texts("notification-text") == ["bob!"]
    assert broadcaster.texts("chat-message-text")[-1] == "alice: hello"
    assert broadcaster.visibility("chat-message-group")[-1] is True


def test_notification_details_while_displayed() -> None:
    queue, _ = _queue()
    item = queue.add_item(_notification(EventType.GIFT, "g", amount=5, currency="coins", gift_type="Rose"))
    queue._current = item
    content = queue.get_current_display_content()
    assert content.content == "g!"
    assert content.notification_details == {"amount": 5, "currency": "coins", "gift_type": "Rose"}
    assert queue.is_item_displayed_to_user("notification") is True


@pytest.mark.asyncio
async def test_platform_notification_gate_skips_broadcast() -> None:
    broadcaster = FakeBroadcaster()
    queue, _ = _queue(broadcaster=broadcaster, tiktok={"notifications_enabled": False})
    queue.add_item(_notification(EventType.FOLLOW, "quiet"))
    await queue.process_queue()
    assert broadcaster.texts("notification-text") == []
    assert queue.get_queue_length() == 0


@pytest.mark.asyncio
async def test_not_ready_broadcaster_is_retried() -> None:
    broadcaster = FakeBroadcaster(ready=False)
    queue, clock = _queue(broadcaster=broadcaster)
    queue.add_item(_notification(EventType.FOLLOW, "later"))

    original_sleep = clock.sleep

    async def sleep_then_ready(seconds: float) -> None:
        broadcaster.ready = True
        await original_sleep(seconds)

    clock.sleep = sleep_then_ready
    await queue.process_queue()

    assert clock.sleeps[0] == 1.0
    assert broadcaster.texts("notification-text") == ["later!"]


@pytest.mark.asyncio
async def test_display_failure_moves_on() -> None:
    broadcaster = FakeBroadcaster()
    broadcaster.fail_text = True
    queue, _ = _queue(broadcaster=broadcaster)
    queue.add_item(_notification(EventType.FOLLOW, "a"))
    queue.add_item(_notification(EventType.FOLLOW, "b"))
    await queue.process_queue()
    assert queue.get_queue_length() == 0
    assert queue.is_processing is False


def test_duration_depends_on_tts_stages() -> None:
    queue, _ = _queue()
    assert queue.get_duration(_notification(EventType.FOLLOW, "a")) == 0
    timed = _notification(EventType.FOLLOW, "a", tts_message="a just followed")
    assert queue.get_duration(timed) == 2000


@pytest.mark.asyncio
async def test_gift_runs_media_goal_and_tts() -> None:
    broadcaster = FakeBroadcaster()
    goals = FakeGoals()
    queue, _ = _queue(broadcaster=broadcaster, goals=goals, general={"tts_enabled": True})
    queue.add_item(
        _notification(EventType.GIFT, "g", amount=10, tts_message="g sent a Rose", message="hey")
    )
    await queue.process_queue()

    assert goals.donations == [(Platform.TIKTOK, 10.0)]
    assert ("media", "gift-video") in broadcaster.calls
    assert ("media", "gift-audio") in broadcaster.calls
    assert broadcaster.texts("tts-text") == ["", "g sent a Rose", "", "g says hey"]


@pytest.mark.asyncio
async def test_notification_vfx_is_emitted_and_awaited() -> None:
    bus = InProcessEventBus()
    broadcaster = FakeBroadcaster()
    effects = FakeEffects()
    queue, clock = _queue(broadcaster=broadcaster, bus=bus, commands={"follows": "!follow, follow-media"})
    vfx_service = VFXCommandService(queue._config, effects, clock, bus=bus)
    vfx_service.start()

    vfx = VfxConfig(command_key="follows", command="!follow", filename="follows", media_source="follow-media")
    queue.add_item(_notification(EventType.FOLLOW, "fan").model_copy(update={"vfx_config": vfx}))
    await queue.process_queue()
    await bus.drain()

    assert len(effects.runs) == 1
    _, context = effects.runs[0]
    assert context["username"] == "fan"
    assert context["notification_type"] == EventType.FOLLOW
    vfx_service.dispose()


@pytest.mark.asyncio
async def test_stop_clears_everything() -> None:
    queue, _ = _queue()
    queue.add_item(_chat("a", "hi"))
    queue.add_item(_notification(EventType.FOLLOW, "b"))
    await queue.stop()
    assert queue.get_queue_length() == 0
    assert queue.last_chat_item is None
    assert queue.get_current_display_content() is None


@pytest.mark.asyncio
async def test_handcam_glow_ramps_up_and_back_down() -> None:
    broadcaster = FakeBroadcaster()
    settings = HandcamSettings(max_size=10, total_steps=2, ramp_up_sec=1, hold_sec=3, ramp_down_sec=1)
    await run_handcam_glow(broadcaster, settings, FakeClock())
    sizes = [call[3]["Size"] for call in broadcaster.calls if call[0] == "filter"]
    assert sizes == [5.0, 10.0, 5.0, 0.0]
