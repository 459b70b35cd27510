from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from stream_notification_engine.adapters.event_bus import InProcessEventBus
from stream_notification_engine.application.chat_router import ChatNotificationRouter
from stream_notification_engine.application.cooldowns import CommandCooldownService
from stream_notification_engine.application.display_queue import DisplayQueue
from stream_notification_engine.application.graceful_exit import GracefulExitService
from stream_notification_engine.application.lifecycle import PlatformLifecycleService
from stream_notification_engine.application.notifications import NotificationManager
from stream_notification_engine.application.router import PlatformEventRouter
from stream_notification_engine.application.vfx import VFXCommandService
from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.events import BaseEvent, EventType
from stream_notification_engine.ports.adapter import AdapterFactory

logger = structlog.get_logger(__name__)


class Runnable(Protocol):
    async def run(self) -> None: ...

    async def close(self) -> None: ...


@dataclass(slots=True)
class StreamRuntime:
    config: ConfigService
    bus: InProcessEventBus
    lifecycle: PlatformLifecycleService
    router: PlatformEventRouter
    chat_router: ChatNotificationRouter
    notifications: NotificationManager
    display_queue: DisplayQueue
    vfx: VFXCommandService
    cooldowns: CommandCooldownService
    adapter_constructors: Mapping[str, AdapterFactory]
    graceful_exit: GracefulExitService | None = None
    broadcaster_connection: Runnable | None = None
    _stopped: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _shutting_down: bool = field(default=False, init=False)

    async def run(self) -> None:
        logger.info("runtime_start", platforms=sorted(self.adapter_constructors))
        try:
            async with asyncio.TaskGroup() as tg:
                self.router.start()
                self.vfx.start()
                self.cooldowns.start()
                self.notifications.start()
                if self.broadcaster_connection is not None:
                    tg.create_task(self.broadcaster_connection.run())
                tg.create_task(self._start_platforms())
                await self._stopped.wait()
        finally:
            await self.shutdown()
        logger.info("runtime_shutdown")

    async def _start_platforms(self) -> None:
        status = await self.lifecycle.initialize_all_platforms(self.adapter_constructors)
        logger.info(
            "runtime_platforms_initialized",
            ready=status["initialized_platforms"],
            failed=[entry["name"] for entry in status["failed_platforms"]],
        )

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        self.router.dispose()
        self.vfx.dispose()
        await self.display_queue.stop()
        await self.lifecycle.disconnect_all()
        await self.notifications.stop()
        await self.cooldowns.stop()
        if self.broadcaster_connection is not None:
            await self.broadcaster_connection.close()
        await self.bus.drain()
        self._stopped.set()


def default_runtime_handlers() -> dict[str, Any]:
    return {
        EventType.STREAM_STATUS: log_stream_status,
        EventType.CONNECTION: log_connection,
        EventType.DISCONNECTION: log_disconnection,
        EventType.ERROR: log_platform_error,
    }


def log_stream_status(event: Any) -> None:
    logger.info(
        "stream_status_changed", platform=_platform_of(event), is_live=getattr(event, "is_live", None)
    )


def log_connection(event: Any) -> None:
    logger.debug("platform_connected", platform=_platform_of(event))


def log_disconnection(event: Any) -> None:
    logger.info(
        "platform_disconnected",
        platform=_platform_of(event),
        reason=getattr(event, "reason", None),
        will_reconnect=getattr(event, "will_reconnect", None),
    )


def log_platform_error(event: Any) -> None:
    error = getattr(event, "error", None)
    logger.warning(
        "platform_error",
        platform=_platform_of(event),
        error=getattr(error, "message", None),
        recoverable=getattr(event, "recoverable", None),
    )


def _platform_of(event: Any) -> str | None:
    if isinstance(event, BaseEvent):
        return event.platform
    if isinstance(event, Mapping):
        return event.get("platform")
    return None
