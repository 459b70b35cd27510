from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any

import structlog

from stream_notification_engine.ports.bus import BusHandler, Unsubscribe

logger = structlog.get_logger(__name__)

HANDLER_ERROR_TOPIC = "handler-error"


class InProcessEventBus:
    """Topic-keyed pub/sub running on the current event loop.

    Handlers for one topic run concurrently. A failing handler is logged and
    reported on ``handler-error`` without affecting its siblings.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[BusHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()
        self._published: dict[str, int] = defaultdict(int)
        self._handler_errors = 0

    def subscribe(self, topic: str, handler: BusHandler) -> Unsubscribe:
        handlers = self._handlers[topic]
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            current = self._handlers.get(topic, [])
            if handler in current:
                current.remove(handler)

        return unsubscribe

    def listener_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))

    async def publish(self, topic: str, payload: Any) -> None:
        self._published[topic] += 1
        handlers = list(self._handlers.get(topic, []))
        if not handlers:
            return
        results = await asyncio.gather(
            *(self._invoke(handler, payload) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results, strict=True):
            if not isinstance(result, Exception):
                continue
            self._handler_errors += 1
            logger.warning(
                "bus_handler_failed",
                topic=topic,
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(result),
            )
            if topic != HANDLER_ERROR_TOPIC:
                await self.publish(HANDLER_ERROR_TOPIC, {"topic": topic, "error": result})

    def emit(self, topic: str, payload: Any) -> None:
        task = asyncio.get_running_loop().create_task(self.publish(topic, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "published": dict(self._published),
            "handler_errors": self._handler_errors,
            "pending": len(self._pending),
            "topics": {topic: len(handlers) for topic, handlers in self._handlers.items()},
        }

    def reset(self) -> None:
        self._handlers.clear()

    @staticmethod
    async def _invoke(handler: BusHandler, payload: Any) -> None:
        result = handler(payload)
        if inspect.isawaitable(result):
            await result
