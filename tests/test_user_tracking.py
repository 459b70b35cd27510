from __future__ import annotations

from stream_notification_engine.application.user_tracking import UserTrackingService


def test_first_message_is_tracked_per_platform() -> None:
    tracking = UserTrackingService()
    assert tracking.is_first_message("u1", "twitch") is True
    assert tracking.is_first_message("u1", "twitch") is False
    assert tracking.is_first_message("u1", "tiktok") is True
    assert tracking.has_seen("u1", "twitch") is True
    assert tracking.get_stats() == {"tracked_users": 2}


def test_blank_user_is_never_first() -> None:
    tracking = UserTrackingService()
    assert tracking.is_first_message("", "twitch") is False
    assert tracking.is_first_message(None, "twitch") is False
    tracking.is_first_message("u1", "twitch")
    tracking.reset()
    assert tracking.is_first_message("u1", "twitch") is True
