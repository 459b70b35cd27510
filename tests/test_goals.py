from __future__ import annotations

import pytest

from stream_notification_engine.application.goals import GoalTracker

from conftest import FakeBroadcaster, make_config


def _tracker(**goals) -> tuple[GoalTracker, FakeBroadcaster]:
    broadcaster = FakeBroadcaster()
    config = make_config(goals={"enabled": True, **goals})
    return GoalTracker(config, broadcaster), broadcaster


@pytest.mark.asyncio
async def test_donation_updates_goal_text() -> None:
    tracker, broadcaster = _tracker(tiktok_goal_target=500)
    result = await tracker.process_donation_goal("tiktok", 120)

    assert result["success"] is True
    assert result["formatted"] == "120/500 coins"
    assert broadcaster.texts("tiktok-goal-txt") == ["120/500 coins"]


@pytest.mark.asyncio
async def test_paypiggy_adds_configured_equivalent() -> None:
    tracker, broadcaster = _tracker()
    await tracker.process_paypiggy_goal("youtube")
    await tracker.process_paypiggy_goal("youtube")
    goal = tracker.get_goal("youtube")
    assert goal["current"] == pytest.approx(9.98)
    assert goal["completed"] is True
    assert broadcaster.texts("youtube-goal-txt")[-1] == "9.98/1 dollars"


@pytest.mark.asyncio
async def test_unconfigured_or_invalid_goals() -> None:
    tracker, _ = _tracker(twitch_goal_enabled=False)
    assert await tracker.process_donation_goal("twitch", 10) == {
        "success": False,
        "error": "No goal configured for twitch",
    }
    assert (await tracker.process_donation_goal("tiktok", 0))["success"] is False

    disabled = GoalTracker(make_config(), FakeBroadcaster())
    assert disabled.get_goal("tiktok") is None


@pytest.mark.asyncio
async def test_reset_and_reload_keep_progress_semantics() -> None:
    tracker, broadcaster = _tracker()
    await tracker.process_donation_goal("tiktok", 40)
    tracker.load_goals()
    assert tracker.get_goal("tiktok")["current"] == 40

    await tracker.reset("tiktok")
    assert tracker.get_goal("tiktok")["current"] == 0
    assert broadcaster.texts("tiktok-goal-txt")[-1] == "0/1000 coins"
