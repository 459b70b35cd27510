from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

BusHandler = Callable[[Any], Awaitable[None] | None]
Unsubscribe = Callable[[], None]

PLATFORM_EVENT_TOPIC = "platform:event"


class EventBusPort(Protocol):
    def subscribe(self, topic: str, handler: BusHandler) -> Unsubscribe: ...

    async def publish(self, topic: str, payload: Any) -> None: ...

    def emit(self, topic: str, payload: Any) -> None: ...
