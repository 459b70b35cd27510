from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from stream_notification_engine.domain.events import BaseEvent

EventHandler = Callable[[BaseEvent], Awaitable[None]]

REQUIRED_ADAPTER_METHODS: tuple[str, ...] = ("initialize", "cleanup", "on")


class PlatformAdapterPort(Protocol):
    async def initialize(self, handlers: Mapping[str, EventHandler]) -> Any: ...

    async def cleanup(self) -> Any: ...

    def on(self, event_name: str, handler: EventHandler) -> None: ...


AdapterFactory = Callable[[Mapping[str, Any]], Any]


def missing_adapter_methods(instance: object) -> list[str]:
    return [
        name for name in REQUIRED_ADAPTER_METHODS if not callable(getattr(instance, name, None))
    ]
