from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.events import Platform
from stream_notification_engine.ports.clock import ClockPort

logger = structlog.get_logger(__name__)

AggregatedHandler = Callable[[dict[str, Any]], Awaitable[Any]]

# YouTube donations are never treated as spam.
_DISABLED_PLATFORMS: frozenset[str] = frozenset({Platform.YOUTUBE})


@dataclass(slots=True)
class SpamPolicy:
    enabled: bool
    low_value_threshold: float
    window_ms: int
    max_individual_notifications: int


@dataclass(slots=True)
class DonationEntry:
    ts_ms: int
    unit_amount: float
    gift_type: str
    gift_count: int
    currency: str


@dataclass(slots=True)
class DonationTracker:
    user_id: str
    username: str
    platform: str
    entries: list[DonationEntry] = field(default_factory=list)
    held: list[DonationEntry] = field(default_factory=list)
    last_reset_ms: int = 0
    task: asyncio.Task[None] | None = None


@dataclass(slots=True)
class SpamDecision:
    should_show: bool
    reason: str | None = None


class DonationSpamDetector:
    """Collapses floods of low-value gifts from one user into a single summary gift.

    The first ``max_individual_notifications`` low-value gifts inside the window are shown
    as usual. Later ones are held back and, once the window elapses, reported together
    through ``on_aggregated``.
    """

    def __init__(
        self,
        config: ConfigService,
        clock: ClockPort,
        on_aggregated: AggregatedHandler | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self.on_aggregated = on_aggregated
        self._trackers: dict[str, DonationTracker] = {}

    def policy_for(self, platform: str) -> SpamPolicy:
        gifts = self._config.settings.gifts
        window_ms = int(gifts.spam_detection_window_sec * 1000)
        if platform in _DISABLED_PLATFORMS:
            return SpamPolicy(False, 1.0, window_ms, gifts.max_individual_notifications)
        return SpamPolicy(
            enabled=gifts.spam_detection_enabled,
            low_value_threshold=gifts.low_value_threshold,
            window_ms=window_ms,
            max_individual_notifications=gifts.max_individual_notifications,
        )

    def is_low_value(self, unit_amount: float, platform: str) -> bool:
        policy = self.policy_for(platform)
        return policy.enabled and unit_amount <= policy.low_value_threshold

    def handle_donation_spam(
        self,
        user_id: str,
        username: str,
        unit_amount: float,
        gift_type: str,
        gift_count: int,
        platform: str,
        currency: str = "coins",
    ) -> SpamDecision:
        policy = self.policy_for(platform)
        if not policy.enabled or not self.is_low_value(unit_amount, platform):
            return SpamDecision(should_show=True)

        now = self._clock.monotonic_ms()
        key = f"{platform}:{user_id}"
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = DonationTracker(
                user_id=user_id, username=username, platform=platform, last_reset_ms=now
            )
            self._trackers[key] = tracker
        tracker.entries = [
            entry for entry in tracker.entries if now - entry.ts_ms <= policy.window_ms
        ]
        entry = DonationEntry(
            ts_ms=now,
            unit_amount=unit_amount,
            gift_type=gift_type,
            gift_count=gift_count,
            currency=currency,
        )
        tracker.entries.append(entry)

        count = len(tracker.entries)
        if count <= policy.max_individual_notifications:
            logger.debug("spam_gift_shown", user_id=user_id, count=count, platform=platform)
            return SpamDecision(should_show=True)

        tracker.held.append(entry)
        tracker.username = username
        tracker.platform = platform
        if tracker.task is None or tracker.task.done():
            tracker.task = asyncio.get_running_loop().create_task(
                self._flush_after(key, policy.window_ms)
            )
            logger.info(
                "spam_aggregation_started",
                user_id=user_id,
                platform=platform,
                window_ms=policy.window_ms,
            )
        logger.info("spam_gift_held", user_id=user_id, count=count, platform=platform)
        return SpamDecision(should_show=False, reason="spam_detection")

    async def _flush_after(self, key: str, window_ms: int) -> None:
        await self._clock.sleep(window_ms / 1000)
        tracker = self._trackers.get(key)
        if tracker is None:
            return
        tracker.task = None
        summary = self.process_aggregated_donation(key)
        if summary is None or self.on_aggregated is None:
            return
        try:
            await self.on_aggregated(summary)
        except Exception as exc:  # noqa: BLE001
            logger.warning("spam_aggregation_failed", key=key, error=str(exc))

    def process_aggregated_donation(self, key: str) -> dict[str, Any] | None:
        tracker = self._trackers.get(key)
        if tracker is None or not tracker.held:
            return None
        held = tracker.held
        total_amount = sum(entry.unit_amount * entry.gift_count for entry in held)
        total_gifts = sum(entry.gift_count for entry in held)
        gift_types = list(dict.fromkeys(entry.gift_type for entry in held))
        currency = held[-1].currency
        noun = "gifts" if total_gifts > 1 else "gift"
        message = (
            f"{tracker.username} sent {total_gifts} {noun} worth "
            f"{total_amount:g} {currency} ({', '.join(gift_types)})"
        )
        summary = {
            "user_id": tracker.user_id,
            "username": tracker.username,
            "platform": tracker.platform,
            "total_amount": total_amount,
            "total_gifts": total_gifts,
            "gift_types": gift_types,
            "currency": currency,
            "message": message,
        }
        tracker.entries = []
        tracker.held = []
        tracker.last_reset_ms = self._clock.monotonic_ms()
        logger.info("spam_aggregation_flushed", key=key, total_gifts=total_gifts)
        return summary

    def cleanup(self, force: bool = False) -> int:
        now = self._clock.monotonic_ms()
        keep_ms = 0 if force else int(self._config.settings.gifts.spam_detection_window_sec * 2000)
        removed = 0
        for key in list(self._trackers):
            tracker = self._trackers[key]
            tracker.entries = [entry for entry in tracker.entries if now - entry.ts_ms <= keep_ms]
            if (tracker.entries or tracker.held) and not force:
                continue
            if not force and now - tracker.last_reset_ms <= keep_ms:
                continue
            if tracker.task is not None:
                tracker.task.cancel()
            del self._trackers[key]
            removed += 1
        return removed

    async def stop(self) -> None:
        tasks = [tracker.task for tracker in self._trackers.values() if tracker.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._trackers.clear()

    def get_stats(self) -> dict[str, Any]:
        gifts = self._config.settings.gifts
        return {
            "tracked_users": len(self._trackers),
            "total_notifications": sum(len(t.entries) for t in self._trackers.values()),
            "enabled": gifts.spam_detection_enabled,
            "threshold": gifts.low_value_threshold,
        }
