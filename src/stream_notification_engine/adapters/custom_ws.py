from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import orjson
import structlog
import websockets
from websockets.protocol import State

from stream_notification_engine.adapters.gift_aggregator import GiftAggregator
from stream_notification_engine.application.factories.base import EventFactory
from stream_notification_engine.application.factories.registry import create_event_factory
from stream_notification_engine.domain.events import BaseEvent
from stream_notification_engine.errors import TransportError
from stream_notification_engine.ports.adapter import EventHandler
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.util.token_store import TokenStore

logger = structlog.get_logger(__name__)

Connector = Callable[..., Awaitable[Any]]

# Frame ``type`` -> (factory method, handler name).
FRAME_ROUTES: dict[str, tuple[str, str]] = {
    "chat": ("create_chat_message", "on_chat"),
    "follow": ("create_follow", "on_follow"),
    "gift": ("create_gift", "on_gift"),
    "tip": ("create_gift", "on_gift"),
    "paypiggy": ("create_paypiggy", "on_paypiggy"),
    "raid": ("create_raid", "on_raid"),
}


class CustomWebSocketPlatform:
    """Platform adapter for a JSON websocket feed of stream events."""

    def __init__(
        self,
        config: Mapping[str, Any],
        factory: EventFactory | None = None,
        connector: Connector = websockets.connect,
        reconnect_backoff_sec: float = 1.0,
        reconnect_max_sec: float = 30.0,
        token_store: TokenStore | None = None,
        gift_aggregation_delay_ms: int = 0,
        clock: ClockPort | None = None,
    ) -> None:
        ws_url = config.get("ws_url")
        if not isinstance(ws_url, str) or not ws_url:
            raise ValueError("Custom platform requires ws_url")
        self._ws_url = ws_url
        self._platform = str(config.get("platform") or "custom")
        self._factory = factory or create_event_factory(self._platform)
        self._connector = connector
        self._reconnect_backoff_sec = reconnect_backoff_sec
        self._reconnect_max_sec = reconnect_max_sec
        self._handlers: dict[str, EventHandler] = {}
        self._ws: Any = None
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._token_store = token_store
        self._aggregator = (
            GiftAggregator(self._emit_aggregated_gift, gift_aggregation_delay_ms, clock)
            if gift_aggregation_delay_ms > 0
            else None
        )

    def on(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name] = handler

    async def initialize(self, handlers: Mapping[str, EventHandler]) -> dict[str, Any]:
        for name, handler in handlers.items():
            self._handlers.setdefault(name, handler)
        self._stop.clear()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return {"success": True, "platform": self._platform}

    async def cleanup(self) -> dict[str, Any]:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._aggregator is not None:
            await self._aggregator.cleanup()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        return {"success": True, "platform": self._platform}

    async def send_message(self, text: str) -> None:
        if self._is_closed():
            raise ConnectionError("Custom platform is not connected")
        await self._ws.send(orjson.dumps({"type": "send-message", "message": text}).decode("utf-8"))

    async def _connect(self) -> Any:
        headers = self._auth_headers()
        if headers:
            return await self._connector(self._ws_url, additional_headers=headers)
        return await self._connector(self._ws_url)

    def _auth_headers(self) -> dict[str, str]:
        if self._token_store is None:
            return {}
        try:
            tokens = self._token_store.load()
        except TransportError as exc:
            logger.warning("custom_ws_token_unavailable", platform=self._platform, error=str(exc))
            return {}
        access_token = (tokens or {}).get("accessToken")
        if not isinstance(access_token, str) or not access_token:
            return {}
        return {"Authorization": f"Bearer {access_token}"}

    async def _run(self) -> None:
        backoff = self._reconnect_backoff_sec
        while not self._stop.is_set():
            try:
                self._ws = await self._connect()
                logger.info("custom_ws_connected", platform=self._platform, ws_url=self._ws_url)
                await self._deliver("on_connection", self._factory.create_connection())
                backoff = self._reconnect_backoff_sec
                async for raw in self._ws:
                    await self.handle_frame(raw)
                await self._deliver(
                    "on_disconnection",
                    self._factory.create_disconnection("closed", will_reconnect=True),
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("custom_ws_reconnect", platform=self._platform, error=str(exc))
                await self._deliver("on_error", self._factory.create_error(exc, {"stage": "stream"}))
            if self._stop.is_set():
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._reconnect_max_sec)

    async def handle_frame(self, raw: str | bytes) -> BaseEvent | None:
        try:
            frame = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("custom_ws_decode_failed", platform=self._platform)
            return None
        if not isinstance(frame, dict):
            return None
        kind = str(frame.get("type") or "").lower()
        if kind == "stream-status":
            event: BaseEvent = self._factory.create_stream_status(
                frame, bool(frame.get("isLive") or frame.get("is_live"))
            )
            await self._deliver("on_stream_status", event)
            return event
        if kind == "gift" and self._aggregator is not None and not frame.get("isAggregated"):
            try:
                self._aggregator.add(frame)
            except ValueError as exc:
                await self._report_invalid(kind, exc)
            return None
        route = FRAME_ROUTES.get(kind)
        if route is None:
            logger.debug("custom_ws_frame_ignored", platform=self._platform, type=kind)
            return None
        method_name, handler_name = route
        build = getattr(self._factory, method_name, None)
        if build is None:
            logger.debug("custom_ws_frame_unsupported", platform=self._platform, type=kind)
            return None
        try:
            event = build(frame)
        except ValueError as exc:
            await self._report_invalid(kind, exc)
            return None
        await self._deliver(handler_name, event)
        return event

    async def _emit_aggregated_gift(self, frame: dict[str, Any]) -> None:
        try:
            event = self._factory.create_gift(frame)
        except ValueError as exc:
            await self._report_invalid("gift", exc)
            return
        await self._deliver("on_gift", event)

    async def _report_invalid(self, kind: str, exc: ValueError) -> None:
        logger.warning("custom_ws_frame_invalid", platform=self._platform, type=kind, error=str(exc))
        await self._deliver(
            "on_error", self._factory.create_error(exc, {"frame_type": kind}, recoverable=True)
        )

    async def _deliver(self, handler_name: str, event: BaseEvent) -> None:
        handler = self._handlers.get(handler_name)
        if handler is None:
            return
        await handler(event)

    def _is_closed(self) -> bool:
        if self._ws is None:
            return True
        return self._ws.state in {State.CLOSING, State.CLOSED}
