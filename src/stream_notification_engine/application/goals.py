from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from stream_notification_engine.config import ConfigService
from stream_notification_engine.ports.broadcaster import BroadcasterPort

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class GoalState:
    platform: str
    current: float
    target: float
    currency: str
    source: str
    paypiggy_value: float

    def formatted(self) -> str:
        return f"{_amount_text(self.current)}/{_amount_text(self.target)} {self.currency}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "current": self.current,
            "target": self.target,
            "currency": self.currency,
            "formatted": self.formatted(),
            "completed": self.current >= self.target,
        }


def _amount_text(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


class GoalTracker:
    """Per-platform donation goals rendered into a broadcaster text source."""

    def __init__(self, config: ConfigService, broadcaster: BroadcasterPort) -> None:
        self._config = config
        self._broadcaster = broadcaster
        self._goals: dict[str, GoalState] = {}
        self.load_goals()

    def load_goals(self) -> None:
        goals = self._config.settings.goals
        previous = self._goals
        self._goals = {}
        if not goals.enabled:
            return
        definitions = {
            "tiktok": (
                goals.tiktok_goal_enabled,
                goals.tiktok_goal_target,
                goals.tiktok_goal_currency,
                goals.tiktok_goal_source,
                goals.tiktok_paypiggy_equivalent,
            ),
            "youtube": (
                goals.youtube_goal_enabled,
                goals.youtube_goal_target,
                goals.youtube_goal_currency,
                goals.youtube_goal_source,
                goals.youtube_paypiggy_price,
            ),
            "twitch": (
                goals.twitch_goal_enabled,
                goals.twitch_goal_target,
                goals.twitch_goal_currency,
                goals.twitch_goal_source,
                goals.twitch_paypiggy_equivalent,
            ),
        }
        for platform, (enabled, target, currency, source, paypiggy_value) in definitions.items():
            if not enabled:
                continue
            carried = previous.get(platform)
            self._goals[platform] = GoalState(
                platform=platform,
                current=carried.current if carried is not None else 0.0,
                target=float(target),
                currency=currency,
                source=source,
                paypiggy_value=float(paypiggy_value),
            )

    def get_goal(self, platform: str) -> dict[str, Any] | None:
        state = self._goals.get(platform)
        return state.as_dict() if state is not None else None

    async def process_donation_goal(self, platform: str, amount: float) -> dict[str, Any]:
        state = self._goals.get(platform)
        if state is None:
            return {"success": False, "error": f"No goal configured for {platform}"}
        if amount <= 0:
            return {"success": False, "error": "Goal amount must be positive"}
        state.current += amount
        await self._render(state)
        return {"success": True, **state.as_dict()}

    async def process_paypiggy_goal(self, platform: str) -> dict[str, Any]:
        state = self._goals.get(platform)
        if state is None:
            return {"success": False, "error": f"No goal configured for {platform}"}
        return await self.process_donation_goal(platform, state.paypiggy_value)

    async def reset(self, platform: str | None = None) -> None:
        targets = [self._goals[platform]] if platform in self._goals else list(self._goals.values())
        for state in targets:
            state.current = 0.0
            await self._render(state)

    async def _render(self, state: GoalState) -> None:
        await self._broadcaster.set_text(state.source, state.formatted())
        logger.info(
            "goal_updated",
            platform=state.platform,
            current=state.current,
            target=state.target,
        )
