from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from stream_notification_engine.application.chat_router import ChatNotificationRouter
from stream_notification_engine.application.notifications import NotificationManager
from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.events import (
    LEGACY_ALIASES,
    NOTIFICATION_SETTING_KEYS,
    NOTIFICATION_TYPES,
    RUNTIME_TYPES,
    BaseEvent,
    EventType,
    is_canonical_type,
    parse_platform_event,
)
from stream_notification_engine.errors import DispatchError, EventValidationError
from stream_notification_engine.ports.bus import PLATFORM_EVENT_TOPIC, EventBusPort, Unsubscribe

logger = structlog.get_logger(__name__)

RuntimeHandler = Callable[[Any], Awaitable[None] | None]
ErrorHandler = Callable[[DispatchError], None]


class PlatformEventRouter:
    """Single consumer of ``platform:event`` that dispatches by canonical type."""

    def __init__(
        self,
        bus: EventBusPort,
        config: ConfigService,
        chat_router: ChatNotificationRouter,
        notifications: NotificationManager,
        runtime_handlers: Mapping[str, RuntimeHandler] | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> None:
        self._bus = bus
        self._config = config
        self._chat = chat_router
        self._notifications = notifications
        self._runtime_handlers = dict(runtime_handlers or {})
        self._error_handler = error_handler
        self._unsubscribe: Unsubscribe | None = None
        self._stats = {"received": 0, "dispatched": 0, "rejected": 0, "gated": 0, "errors": 0}

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(PLATFORM_EVENT_TOPIC, self.handle_event)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    async def handle_event(self, payload: Any) -> None:
        self._stats["received"] += 1
        try:
            event_type, platform, data = self._unpack(payload)
        except EventValidationError as exc:
            self._stats["rejected"] += 1
            logger.warning("router_event_rejected", field=exc.field, error=str(exc))
            return
        try:
            await self._dispatch(event_type, platform, data)
        except Exception as exc:  # noqa: BLE001
            self._stats["errors"] += 1
            error = DispatchError(f"{event_type} handler failed: {exc}")
            logger.warning(
                "router_dispatch_failed", type=event_type, platform=platform, error=str(exc)
            )
            if self._error_handler is not None:
                self._error_handler(error)

    def _unpack(self, payload: Any) -> tuple[str, str, Any]:
        if isinstance(payload, BaseEvent):
            return payload.type, payload.platform, payload
        if not isinstance(payload, Mapping):
            raise EventValidationError("payload", "Event payload must be an object")
        data = payload.get("data")
        if isinstance(data, (Mapping, BaseEvent)):
            event_type = payload.get("type")
            platform = payload.get("platform")
            if not isinstance(event_type, str) or not event_type:
                raise EventValidationError("type", "Event payload requires type")
            if not isinstance(platform, str) or not platform:
                raise EventValidationError("platform", "Event payload requires platform")
            return event_type, platform, data
        event = parse_platform_event(payload)
        return event.type, event.platform, event

    async def _dispatch(self, event_type: str, platform: str, data: Any) -> None:
        match event_type:
            case EventType.CHAT_MESSAGE:
                await self._chat.handle_chat_message(platform, data)
            case _ if event_type in NOTIFICATION_TYPES or event_type in LEGACY_ALIASES:
                if is_canonical_type(event_type):
                    setting_key = NOTIFICATION_SETTING_KEYS.get(EventType(event_type))
                    if setting_key and not self._config.are_notifications_enabled(
                        setting_key, platform
                    ):
                        self._stats["gated"] += 1
                        logger.debug("router_notification_gated", type=event_type, platform=platform)
                        return
                await self._notifications.handle_notification(event_type, platform, data)
            case _ if event_type in RUNTIME_TYPES:
                handler = self._runtime_handlers.get(event_type)
                if handler is None:
                    logger.debug("router_runtime_unhandled", type=event_type, platform=platform)
                    return
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            case _:
                self._stats["rejected"] += 1
                logger.warning("router_event_rejected", type=event_type, platform=platform)
                return
        self._stats["dispatched"] += 1

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
