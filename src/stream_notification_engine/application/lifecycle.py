from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

import structlog

from stream_notification_engine.config import PLATFORM_SECTIONS, ConfigService, PlatformSettings
from stream_notification_engine.domain.events import BaseEvent, EventType, Platform
from stream_notification_engine.errors import ConfigError, ContractError
from stream_notification_engine.ports.adapter import (
    AdapterFactory,
    EventHandler,
    missing_adapter_methods,
)
from stream_notification_engine.ports.bus import PLATFORM_EVENT_TOPIC, EventBusPort
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.ports.detector import StreamDetectorPort

logger = structlog.get_logger(__name__)

RECENT_ERROR_LIMIT = 10

# Handler name registered on every adapter, and the canonical type it forwards.
DEFAULT_HANDLER_TYPES: dict[str, EventType] = {
    "on_chat": EventType.CHAT_MESSAGE,
    "on_gift": EventType.GIFT,
    "on_paypiggy": EventType.PAYPIGGY,
    "on_follow": EventType.FOLLOW,
    "on_share": EventType.SHARE,
    "on_raid": EventType.RAID,
    "on_envelope": EventType.ENVELOPE,
    "on_stream_status": EventType.STREAM_STATUS,
    "on_connection": EventType.CONNECTION,
    "on_disconnection": EventType.DISCONNECTION,
    "on_error": EventType.ERROR,
}

DIRECT_PLATFORMS = frozenset({Platform.YOUTUBE})
BACKGROUND_PLATFORMS = frozenset({Platform.TIKTOK})


class PlatformState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(slots=True)
class PlatformHealth:
    state: PlatformState = PlatformState.UNINITIALIZED
    attempts: int = 0
    failures: int = 0
    last_updated: int | None = None
    last_error: str | None = None
    last_connection: int | None = None


class PlatformLifecycleService:
    """Registry of platform adapters and their connection state."""

    def __init__(
        self,
        config: ConfigService,
        bus: EventBusPort,
        clock: ClockPort,
        stream_detector: StreamDetectorPort | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self._clock = clock
        self._detector = stream_detector
        self._adapters: dict[str, Any] = {}
        self._health: dict[str, PlatformHealth] = {}
        self._disabled: set[str] = set()
        self._connection_times: dict[str, int] = {}
        self._stream_statuses: dict[str, dict[str, Any]] = {}
        self._recent_errors: list[dict[str, Any]] = []
        self._background: dict[str, asyncio.Task[None]] = {}

    async def initialize_all_platforms(
        self, constructors: Mapping[str, AdapterFactory]
    ) -> dict[str, Any]:
        for name in PLATFORM_SECTIONS:
            settings = self._config.platform_config(name)
            if settings is None or not settings.enabled:
                self._disabled.add(name)
                logger.debug("platform_disabled", platform=name)
                continue
            self._disabled.discard(name)
            await self._initialize_platform(name, constructors.get(name), settings)
        return self.get_status()

    async def _initialize_platform(
        self, name: str, constructor: AdapterFactory | None, settings: PlatformSettings
    ) -> None:
        health = self._health.setdefault(name, PlatformHealth())
        health.attempts += 1
        self._set_state(name, PlatformState.INITIALIZING)
        try:
            if name == Platform.YOUTUBE and not settings.username:
                raise ConfigError("Missing username", f"Set username under [{name}]")
            if constructor is None:
                raise ContractError(f"No adapter available for {name}")
            adapter = constructor({**settings.model_dump(), "platform": name})
            missing = missing_adapter_methods(adapter)
            if missing:
                raise ContractError(
                    f"Adapter for {name} is missing required methods: {', '.join(missing)}",
                    missing,
                )
            handlers = self.create_default_handlers(name)
            self._adapters[name] = adapter

            if name in DIRECT_PLATFORMS:
                await self._connect(name, adapter, handlers)
            elif name in BACKGROUND_PLATFORMS:
                task = asyncio.get_running_loop().create_task(
                    self._connect_in_background(name, adapter, handlers)
                )
                self._background[name] = task
            else:
                if self._detector is None:
                    raise ContractError(f"Stream detection unavailable for {name}")

                async def connect() -> None:
                    await self._connect(name, adapter, handlers)

                def status(is_live: bool, reason: str | None = None) -> None:
                    self._record_stream_status(name, is_live, reason)

                await self._detector.start_stream_detection(
                    name, settings.model_dump(), connect, status
                )
        except Exception as exc:  # noqa: BLE001
            self._adapters.pop(name, None)
            self._record_failure(name, exc)

    async def _connect(self, name: str, adapter: Any, handlers: Mapping[str, EventHandler]) -> None:
        await adapter.initialize(handlers)
        now = self._clock.now_ms()
        self._connection_times[name] = now
        self._health[name].last_connection = now
        self._set_state(name, PlatformState.READY)
        logger.info("platform_ready", platform=name)

    async def _connect_in_background(
        self, name: str, adapter: Any, handlers: Mapping[str, EventHandler]
    ) -> None:
        try:
            await self._connect(name, adapter, handlers)
        except Exception as exc:  # noqa: BLE001
            self._adapters.pop(name, None)
            self._record_failure(name, exc)
        finally:
            self._background.pop(name, None)

    async def wait_for_background_inits(self, timeout: float | None = None) -> bool:
        tasks = list(self._background.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    def create_default_handlers(self, platform: str) -> dict[str, EventHandler]:
        return {
            handler_name: self._make_handler(platform, event_type)
            for handler_name, event_type in DEFAULT_HANDLER_TYPES.items()
        }

    def _make_handler(self, platform: str, event_type: EventType) -> EventHandler:
        async def handler(event: Any) -> None:
            timestamp = (
                event.timestamp if isinstance(event, BaseEvent) else _mapping_timestamp(event)
            )
            if not timestamp:
                logger.warning("platform_event_dropped", platform=platform, type=event_type)
                return
            if event_type == EventType.CONNECTION:
                self._connection_times[platform] = self._clock.now_ms()
            elif event_type == EventType.STREAM_STATUS and isinstance(event, BaseEvent):
                self._record_stream_status(platform, bool(getattr(event, "is_live", False)), None)
            await self._bus.publish(PLATFORM_EVENT_TOPIC, event)

        handler.__name__ = f"{platform}_{event_type.name.lower()}"
        return handler

    async def disconnect_all(self) -> None:
        for task in list(self._background.values()):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background.values(), return_exceptions=True)
            self._background.clear()
        if self._detector is not None:
            try:
                await self._detector.stop()
            except Exception as exc:  # noqa: BLE001
                logger.warning("stream_detector_stop_failed", error=str(exc))
        for name, adapter in list(self._adapters.items()):
            try:
                await adapter.cleanup()
            except Exception as exc:  # noqa: BLE001
                logger.warning("platform_cleanup_failed", platform=name, error=str(exc))
            self._set_state(name, PlatformState.CLOSED)
        self._adapters.clear()

    def is_platform_available(self, name: str) -> bool:
        health = self._health.get(name)
        return name in self._adapters and health is not None and health.state == PlatformState.READY

    def get_all_platforms(self) -> dict[str, Any]:
        return dict(self._adapters)

    def get_platform(self, name: str) -> Any | None:
        return self._adapters.get(name)

    def get_platform_connection_time(self, name: str) -> int | None:
        return self._connection_times.get(name)

    def get_health(self, name: str) -> dict[str, Any] | None:
        health = self._health.get(name)
        return asdict(health) if health is not None else None

    def get_status(self) -> dict[str, Any]:
        def names_in(state: PlatformState) -> list[str]:
            return [name for name, health in self._health.items() if health.state == state]

        return {
            "initialized_platforms": names_in(PlatformState.READY),
            "initializing_platforms": names_in(PlatformState.INITIALIZING),
            "failed_platforms": [
                {"name": name, "last_error": self._health[name].last_error}
                for name in names_in(PlatformState.FAILED)
            ],
            "disabled_platforms": sorted(self._disabled),
            "connection_times": dict(self._connection_times),
            "stream_statuses": {name: dict(value) for name, value in self._stream_statuses.items()},
            "background_initializations": len(self._background),
            "recent_errors": [dict(entry) for entry in self._recent_errors],
            "health": {name: asdict(health) for name, health in self._health.items()},
        }

    def _set_state(self, name: str, state: PlatformState) -> None:
        health = self._health.setdefault(name, PlatformHealth())
        health.state = state
        health.last_updated = self._clock.now_ms()

    def _record_failure(self, name: str, exc: BaseException) -> None:
        health = self._health.setdefault(name, PlatformHealth())
        health.failures += 1
        health.last_error = str(exc)
        self._set_state(name, PlatformState.FAILED)
        self._recent_errors.append(
            {"platform": name, "error": str(exc), "timestamp": self._clock.now_ms()}
        )
        del self._recent_errors[:-RECENT_ERROR_LIMIT]
        logger.error("platform_failed", platform=name, error=str(exc))

    def _record_stream_status(self, name: str, is_live: bool, reason: str | None) -> None:
        previous = self._stream_statuses.get(name, {}).get("is_live")
        self._stream_statuses[name] = {
            "is_live": is_live,
            "reason": reason,
            "updated_at": self._clock.now_ms(),
        }
        if previous != is_live:
            logger.info("stream_status_changed", platform=name, is_live=is_live, reason=reason)


def _mapping_timestamp(event: Any) -> Any:
    if isinstance(event, Mapping):
        return event.get("timestamp")
    return None
