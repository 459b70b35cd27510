from __future__ import annotations

import asyncio

import pytest

from stream_notification_engine.application.spam_detection import DonationSpamDetector

from conftest import FakeClock, make_config


def _detector(**gifts) -> tuple[DonationSpamDetector, FakeClock]:
    clock = FakeClock()
    return DonationSpamDetector(make_config(gifts=gifts), clock), clock


def test_policy_uses_gift_settings_and_disables_youtube() -> None:
    detector, _ = _detector(low_value_threshold=5, spam_detection_window_sec=3)
    policy = detector.policy_for("tiktok")
    assert policy.enabled is True
    assert policy.low_value_threshold == 5
    assert policy.window_ms == 3_000

    youtube = detector.policy_for("youtube")
    assert youtube.enabled is False
    assert youtube.low_value_threshold == 1.0
    assert detector.is_low_value(0.5, "youtube") is False


@pytest.mark.asyncio
async def test_gifts_above_threshold_are_always_shown() -> None:
    detector, _ = _detector()
    for _ in range(5):
        assert detector.handle_donation_spam("u1", "big", 100, "Lion", 1, "tiktok").should_show
    assert detector.get_stats()["tracked_users"] == 0


@pytest.mark.asyncio
async def test_held_gifts_are_summarized_once_window_elapses() -> None:
    detector, clock = _detector(max_individual_notifications=1)
    summaries: list[dict] = []
    done = asyncio.Event()

    async def on_aggregated(summary: dict) -> None:
        summaries.append(summary)
        done.set()

    detector.on_aggregated = on_aggregated
    first = detector.handle_donation_spam("u1", "rosy", 1, "Rose", 1, "tiktok")
    second = detector.handle_donation_spam("u1", "rosy", 1, "Rose", 3, "tiktok")
    third = detector.handle_donation_spam("u1", "rosy", 2, "Heart", 2, "tiktok")
    assert first.should_show is True
    assert (second.should_show, second.reason) == (False, "spam_detection")
    assert third.should_show is False

    await asyncio.wait_for(done.wait(), timeout=1)
    (summary,) = summaries
    assert clock.sleeps == [5.0]
    assert summary["total_gifts"] == 5
    assert summary["total_amount"] == 7
    assert summary["gift_types"] == ["Rose", "Heart"]
    assert summary["message"] == "rosy sent 5 gifts worth 7 coins (Rose, Heart)"

    after = detector.handle_donation_spam("u1", "rosy", 1, "Rose", 1, "tiktok")
    assert after.should_show is True
    await detector.stop()


@pytest.mark.asyncio
async def test_trackers_are_per_platform() -> None:
    detector, _ = _detector(max_individual_notifications=1)
    assert detector.handle_donation_spam("u1", "a", 1, "Rose", 1, "tiktok").should_show
    assert detector.handle_donation_spam("u1", "a", 1, "Rose", 1, "twitch").should_show
    assert detector.get_stats()["tracked_users"] == 2
    await detector.stop()


def test_cleanup_drops_idle_trackers() -> None:
    detector, clock = _detector()
    detector.handle_donation_spam("u1", "a", 1, "Rose", 1, "tiktok")
    assert detector.cleanup() == 0
    clock.advance(10_001)
    assert detector.cleanup() == 1
    assert detector.get_stats()["tracked_users"] == 0
