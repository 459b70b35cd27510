from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Mapping
from typing import Any

import structlog

from stream_notification_engine.application.display_queue import DisplayQueue
from stream_notification_engine.application.messages import (
    build_display_message,
    build_tts_message,
)
from stream_notification_engine.application.spam_detection import DonationSpamDetector
from stream_notification_engine.application.vfx import VFXCommandService
from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.display import (
    DisplayItem,
    NotificationResult,
    VfxConfig,
    priority_for,
)
from stream_notification_engine.domain.events import (
    LEGACY_ALIASES,
    NOTIFICATION_SETTING_KEYS,
    NOTIFICATION_TYPES,
    BaseEvent,
    EventType,
    Platform,
)
from stream_notification_engine.ports.bus import EventBusPort
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.ports.goals import GoalsPort

logger = structlog.get_logger(__name__)

TTS_REQUESTED_TOPIC = "tts:speech-requested"

# Keys looked up in the ``commands`` / ``vfx_triggers`` config sections.
NOTIFICATION_COMMAND_KEYS: dict[str, str] = {
    EventType.FOLLOW: "follows",
    EventType.GIFT: "gifts",
    EventType.ENVELOPE: "gifts",
    EventType.PAYPIGGY: "paypiggies",
    EventType.RAID: "raids",
    EventType.SHARE: "shares",
}

AMOUNT_TYPES: frozenset[str] = frozenset({EventType.GIFT, EventType.ENVELOPE})


def _notification_data(data: BaseEvent | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(data, BaseEvent):
        payload = data.to_data()
        payload["correlation_id"] = data.correlation_id
    else:
        payload = dict(data)
    payload.pop("metadata", None)
    return payload


class NotificationManager:
    """Validates platform notifications and turns them into display queue items."""

    def __init__(
        self,
        config: ConfigService | None,
        display_queue: DisplayQueue,
        clock: ClockPort,
        vfx: VFXCommandService | None = None,
        bus: EventBusPort | None = None,
        goals: GoalsPort | None = None,
        spam_detector: DonationSpamDetector | None = None,
    ) -> None:
        if config is None:
            raise ValueError("NotificationManager requires ConfigService dependency")
        self._config = config
        self._queue = display_queue
        self._clock = clock
        self._vfx = vfx
        self._bus = bus
        self._goals = goals
        self._spam_detector = spam_detector
        if spam_detector is not None and spam_detector.on_aggregated is None:
            spam_detector.on_aggregated = self.handle_aggregated_donation
        self._history: dict[str, deque[int]] = {}
        self._suppressed_until: dict[str, int] = {}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._stats = {
            "handled": 0,
            "enqueued": 0,
            "rejected": 0,
            "suppressed": 0,
            "spam_held": 0,
        }

    async def handle_notification(
        self,
        notification_type: str,
        platform: str,
        data: BaseEvent | Mapping[str, Any],
        skip_spam_detection: bool = False,
    ) -> NotificationResult:
        self._stats["handled"] += 1
        if not platform or platform not in Platform._value2member_map_:
            return self._reject(notification_type, platform, f"Unsupported platform: {platform}")
        if notification_type in LEGACY_ALIASES:
            logger.info("router_event_rejected", type=notification_type, platform=platform)
            return self._reject(notification_type, platform, "Unknown notification type")
        if notification_type not in NOTIFICATION_TYPES:
            return self._reject(notification_type, platform, "Unknown notification type")

        payload = _notification_data(data)
        declared = payload.get("type")
        if declared is not None and declared != notification_type:
            return self._reject(
                notification_type,
                platform,
                "Notification type mismatch",
                details=f"payload type {declared} does not match {notification_type}",
            )

        setting_key = NOTIFICATION_SETTING_KEYS.get(EventType(notification_type))
        if setting_key and not self._config.are_notifications_enabled(setting_key, platform):
            logger.debug("notification_disabled", type=notification_type, platform=platform)
            return NotificationResult(
                success=False,
                error="Notifications disabled",
                notification_type=notification_type,
                platform=platform,
                disabled=True,
            )

        if notification_type in AMOUNT_TYPES:
            amount = payload.get("amount")
            if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
                return self._reject(notification_type, platform, "Gift amount must be positive")

        user_id = payload.get("user_id")
        username = payload.get("username")
        if not isinstance(username, str) or not username.strip():
            username = self._config.settings.general.fallback_username
        user_key = f"{platform}:{user_id or username}"

        if self._is_suppressed(user_key):
            self._stats["suppressed"] += 1
            logger.info("notification_suppressed", user=user_key, type=notification_type)
            return NotificationResult(
                success=False,
                notification_type=notification_type,
                platform=platform,
                suppressed=True,
                reason="user_suppression",
            )
        if (
            notification_type == EventType.GIFT
            and not skip_spam_detection
            and not payload.get("is_aggregated")
            and self._is_spam(platform, user_key, username, payload)
        ):
            self._stats["spam_held"] += 1
            return NotificationResult(
                success=False,
                notification_type=notification_type,
                platform=platform,
                suppressed=True,
                reason="spam_detection",
            )
        self._record(user_key)

        payload.update(type=notification_type, platform=platform, username=username)
        vfx_config = await self._resolve_vfx(notification_type, payload)
        payload["display_message"] = build_display_message(notification_type, payload)
        payload["tts_message"] = build_tts_message(notification_type, payload)

        priority = priority_for(notification_type)
        item = DisplayItem(
            type=notification_type,
            platform=Platform(platform),
            data=payload,
            priority=priority,
            vfx_config=vfx_config,
        )
        try:
            self._queue.add_item(item)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification_enqueue_failed", type=notification_type, error=str(exc))
            return self._reject(notification_type, platform, "Display queue error", details=str(exc))

        self._stats["enqueued"] += 1
        logger.info(
            "notification_enqueued",
            type=notification_type,
            platform=platform,
            username=username,
            priority=int(priority),
        )
        await self._request_speech(notification_type, platform, payload)
        if notification_type == EventType.PAYPIGGY and self._goals is not None:
            self._spawn(self._track_paypiggy_goal(platform))

        return NotificationResult(
            success=True,
            notification_type=notification_type,
            platform=platform,
            priority=priority,
            notification_data=payload,
            vfx_config=vfx_config,
        )

    async def handle_aggregated_donation(self, summary: Mapping[str, Any]) -> NotificationResult:
        """Surface a batch of held low-value gifts as one aggregated gift."""
        gift_types = [str(name) for name in summary.get("gift_types") or []]
        total_gifts = int(summary.get("total_gifts") or 0)
        data = {
            "user_id": summary.get("user_id"),
            "username": summary.get("username"),
            "gift_type": gift_types[0] if len(gift_types) == 1 else "Multiple Gifts",
            "gift_count": total_gifts,
            "amount": summary.get("total_amount"),
            "currency": summary.get("currency"),
            "is_aggregated": True,
            "aggregated_count": total_gifts,
        }
        logger.info(
            "spam_aggregated_donation",
            platform=summary.get("platform"),
            username=summary.get("username"),
            total_gifts=total_gifts,
        )
        return await self.handle_notification(
            EventType.GIFT, str(summary.get("platform") or ""), data, skip_spam_detection=True
        )

    def _is_spam(
        self, platform: str, user_key: str, username: str, payload: Mapping[str, Any]
    ) -> bool:
        if self._spam_detector is None:
            return False
        try:
            gift_type = payload.get("gift_type")
            gift_count = payload.get("gift_count")
            if not gift_type or isinstance(gift_count, bool) or not isinstance(gift_count, int):
                raise ValueError("Gift spam detection requires giftType, giftCount, and amount")
            if gift_count <= 0:
                raise ValueError("Gift spam detection requires valid giftCount")
            decision = self._spam_detector.handle_donation_spam(
                str(payload.get("user_id") or username),
                username,
                float(payload["amount"]) / gift_count,
                str(gift_type),
                gift_count,
                platform,
                currency=str(payload.get("currency") or "coins"),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("spam_detection_failed", user=user_key, error=str(exc))
            return False
        if not decision.should_show:
            logger.debug("notification_spam_held", user=user_key, gift_type=payload.get("gift_type"))
        return not decision.should_show

    async def _resolve_vfx(self, notification_type: str, payload: dict[str, Any]) -> VfxConfig | None:
        command_key = NOTIFICATION_COMMAND_KEYS.get(notification_type)
        if self._vfx is None or command_key is None:
            return None
        message = payload.get("message")
        try:
            return await self._vfx.get_vfx_config(
                command_key, message if isinstance(message, str) else None
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification_vfx_lookup_failed", command_key=command_key, error=str(exc))
            return None

    async def _request_speech(
        self, notification_type: str, platform: str, payload: Mapping[str, Any]
    ) -> None:
        text = payload.get("tts_message")
        if self._bus is None or not text:
            return
        await self._bus.publish(
            TTS_REQUESTED_TOPIC,
            {
                "text": text,
                "type": notification_type,
                "platform": platform,
                "username": payload.get("username"),
            },
        )

    async def _track_paypiggy_goal(self, platform: str) -> None:
        if self._goals is None:
            return
        try:
            await self._goals.process_paypiggy_goal(platform)
        except Exception as exc:  # noqa: BLE001
            logger.warning("goal_tracking_failed", platform=platform, error=str(exc))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _reject(
        self,
        notification_type: str,
        platform: str,
        error: str,
        details: str | None = None,
    ) -> NotificationResult:
        self._stats["rejected"] += 1
        logger.debug("notification_rejected", type=notification_type, platform=platform, error=error)
        return NotificationResult(
            success=False,
            error=error,
            notification_type=notification_type,
            platform=platform,
            details=details,
        )

    def _suppression_enabled(self) -> bool:
        return self._config.settings.general.user_suppression_enabled

    def _is_suppressed(self, user_key: str) -> bool:
        if not self._suppression_enabled():
            return False
        general = self._config.settings.general
        now = self._clock.monotonic_ms()
        until = self._suppressed_until.get(user_key)
        if until is not None:
            if now < until:
                return True
            self._suppressed_until.pop(user_key, None)
        history = self._history.get(user_key)
        if not history:
            return False
        while history and now - history[0] >= general.suppression_window_ms:
            history.popleft()
        # History excludes the notification being checked.
        if len(history) >= general.max_notifications_per_user:
            self._suppressed_until[user_key] = now + general.suppression_duration_ms
            logger.info(
                "notification_user_suppressed",
                user=user_key,
                count=len(history),
                duration_ms=general.suppression_duration_ms,
            )
            return True
        return False

    def _record(self, user_key: str) -> None:
        if not self._suppression_enabled():
            return
        self._history.setdefault(user_key, deque()).append(self._clock.monotonic_ms())

    def cleanup_suppression(self) -> int:
        general = self._config.settings.general
        now = self._clock.monotonic_ms()
        expired = [key for key, until in self._suppressed_until.items() if now >= until]
        for key in expired:
            self._suppressed_until.pop(key, None)
        stale = [
            key
            for key, history in self._history.items()
            if key not in self._suppressed_until
            and (not history or now - history[-1] > general.suppression_window_ms)
        ]
        for key in stale:
            self._history.pop(key, None)
        return len(expired) + len(stale)

    def is_user_suppressed(self, platform: str, user_id: str) -> bool:
        return self._is_suppressed(f"{platform}:{user_id}")

    def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._cleanup_task, *self._background) if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._cleanup_task = None
        if self._spam_detector is not None:
            await self._spam_detector.stop()

    async def _cleanup_loop(self) -> None:
        while True:
            interval = self._config.settings.general.suppression_cleanup_interval_ms
            await self._clock.sleep(interval / 1000)
            removed = self.cleanup_suppression()
            if self._spam_detector is not None:
                removed += self._spam_detector.cleanup()
            if removed:
                logger.debug("notification_suppression_cleanup", removed=removed)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "tracked_users": len(self._history),
            "suppressed_users": len(self._suppressed_until),
        }
