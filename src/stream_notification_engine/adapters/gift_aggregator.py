from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from stream_notification_engine.application.factories.base import (
    clean_text,
    pick,
    positive_int,
    positive_number,
)
from stream_notification_engine.errors import EventValidationError
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.util.clock import SystemClock

logger = structlog.get_logger(__name__)

GiftEmitter = Callable[[dict[str, Any]], Awaitable[None]]

DEFAULT_DELAY_MS = 2000
DUPLICATE_WINDOW_MS = 1000


@dataclass(slots=True)
class GiftStreak:
    username: str
    gift_type: str
    currency: str
    unit_amount: float
    total_count: int = 0
    last_seen_ms: int = 0
    frame: dict[str, Any] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None


class GiftAggregator:
    """Coalesces a streak of the same gift from one user into a single gift frame.

    Streak frames carry the running ``giftCount``. Each frame restarts the flush timer, so
    the aggregated frame is emitted once the streak has been quiet for ``delay_ms``.
    """

    def __init__(
        self,
        emit: GiftEmitter,
        delay_ms: int = DEFAULT_DELAY_MS,
        clock: ClockPort | None = None,
    ) -> None:
        self._emit = emit
        self._delay_ms = delay_ms
        self._clock = clock or SystemClock()
        self._streaks: dict[str, GiftStreak] = {}

    @property
    def pending(self) -> int:
        return len(self._streaks)

    def add(self, frame: Mapping[str, Any]) -> None:
        user = frame.get("user")
        user = user if isinstance(user, Mapping) else {}
        identity = clean_text(pick(frame, "userId", "user_id")) or clean_text(
            pick(user, "userId", "uniqueId")
        )
        username = clean_text(pick(frame, "username", "displayName")) or clean_text(
            pick(user, "nickname", "uniqueId")
        )
        if not identity and not username:
            raise EventValidationError("username", "Gift aggregation requires a user")
        gift_type = clean_text(pick(frame, "giftType", "gift_type"))
        if not gift_type:
            raise EventValidationError("giftType", "Gift aggregation requires giftType")
        gift_count = positive_int(pick(frame, "giftCount", "gift_count"))
        if gift_count is None:
            raise EventValidationError("giftCount", "Gift aggregation requires giftCount")
        currency = clean_text(frame.get("currency"))
        if not currency:
            raise EventValidationError("currency", "Gift aggregation requires currency")
        unit_amount = positive_number(pick(frame, "unitAmount", "unit_amount"))
        if unit_amount is None:
            amount = positive_number(frame.get("amount"))
            unit_amount = amount / gift_count if amount is not None else None
        if unit_amount is None:
            raise EventValidationError("unitAmount", "Gift aggregation requires unitAmount")

        key = f"{identity or username}-{gift_type}"
        now = self._clock.monotonic_ms()
        streak = self._streaks.get(key)
        if streak is None:
            streak = GiftStreak(
                username=username or identity,
                gift_type=gift_type,
                currency=currency,
                unit_amount=unit_amount,
                last_seen_ms=now,
            )
            self._streaks[key] = streak
        elif streak.total_count == gift_count and now - streak.last_seen_ms < DUPLICATE_WINDOW_MS:
            logger.debug("gift_streak_duplicate", key=key, count=gift_count)
            return

        streak.total_count = gift_count
        streak.last_seen_ms = now
        streak.unit_amount = unit_amount
        streak.currency = currency
        if username:
            streak.username = username
        streak.frame = dict(frame)
        if streak.task is not None:
            streak.task.cancel()
        streak.task = asyncio.get_running_loop().create_task(self._flush_after(key))

    async def _flush_after(self, key: str) -> None:
        await self._clock.sleep(self._delay_ms / 1000)
        streak = self._streaks.pop(key, None)
        if streak is None:
            return
        count = streak.total_count
        frame = streak.frame
        frame.update(
            giftType=streak.gift_type,
            giftCount=count,
            repeatCount=count,
            unitAmount=streak.unit_amount,
            amount=streak.unit_amount * count,
            currency=streak.currency,
            isAggregated=True,
            aggregatedCount=count,
        )
        if not clean_text(pick(frame, "username", "displayName")):
            frame["username"] = streak.username
        logger.info(
            "gift_streak_flushed",
            key=key,
            gift_type=streak.gift_type,
            count=count,
            amount=frame["amount"],
        )
        try:
            await self._emit(frame)
        except Exception as exc:  # noqa: BLE001
            logger.warning("gift_streak_emit_failed", key=key, error=str(exc))

    async def cleanup(self) -> None:
        tasks = [streak.task for streak in self._streaks.values() if streak.task is not None]
        self._streaks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
