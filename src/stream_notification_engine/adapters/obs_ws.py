from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
from collections.abc import Awaitable, Callable
from typing import Any

import orjson
import structlog
import websockets
from websockets.protocol import State

from stream_notification_engine.config import ObsSettings
from stream_notification_engine.domain.display import VfxConfig
from stream_notification_engine.errors import TransportError
from stream_notification_engine.ports.broadcaster import BroadcasterPort
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.util.ids import new_correlation_id

logger = structlog.get_logger(__name__)

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7
RPC_VERSION = 1
MEDIA_RESTART = "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_RESTART"

Connector = Callable[..., Awaitable[Any]]


def auth_response(password: str, salt: str, challenge: str) -> str:
    secret = base64.b64encode(hashlib.sha256((password + salt).encode("utf-8")).digest())
    digest = hashlib.sha256(secret + challenge.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


class ObsWebSocketBroadcaster:
    """obs-websocket v5 client implementing the broadcaster port."""

    def __init__(self, settings: ObsSettings, connector: Connector = websockets.connect) -> None:
        self._settings = settings
        self._connector = connector
        self._ws: Any = None
        self._identified = False
        self._stop = asyncio.Event()
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._scene_items: dict[tuple[str, str], int] = {}
        self._reader_task: asyncio.Task[None] | None = None

    async def is_ready(self) -> bool:
        return self._identified and not self._is_closed()

    async def connect(self) -> None:
        if not self._is_closed() and self._identified:
            return
        timeout = self._settings.connection_timeout_ms / 1000
        async with asyncio.timeout(timeout):
            self._ws = await self._connector(self._settings.address, ping_interval=None)
            hello = self._decode(await self._ws.recv())
            await self._identify(hello)
        self._scene_items.clear()
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("obs_connected", address=self._settings.address)

    async def _identify(self, hello: dict[str, Any]) -> None:
        if hello.get("op") != OP_HELLO:
            raise TransportError("Broadcaster handshake failed: expected hello")
        data = hello.get("d") or {}
        identify: dict[str, Any] = {"rpcVersion": RPC_VERSION, "eventSubscriptions": 0}
        auth = data.get("authentication")
        if isinstance(auth, dict):
            if not self._settings.password:
                raise TransportError("Broadcaster requires a password; set obs.password")
            identify["authentication"] = auth_response(
                self._settings.password, auth.get("salt", ""), auth.get("challenge", "")
            )
        await self._send({"op": OP_IDENTIFY, "d": identify})
        reply = self._decode(await self._ws.recv())
        if reply.get("op") != OP_IDENTIFIED:
            raise TransportError("Broadcaster rejected identification")
        self._identified = True

    async def run(self) -> None:
        backoff = self._settings.reconnect_backoff_sec
        while not self._stop.is_set():
            try:
                await self.connect()
                backoff = self._settings.reconnect_backoff_sec
                if self._reader_task is not None:
                    await self._reader_task
            except asyncio.CancelledError:
                if not self._stop.is_set():
                    raise
                break
            except Exception as exc:  # noqa: BLE001
                logger.warning("obs_reconnect", error=str(exc), backoff_sec=backoff)
            self._identified = False
            self._fail_pending("Broadcaster connection lost")
            if self._stop.is_set():
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self._settings.reconnect_max_sec)

    async def close(self) -> None:
        self._stop.set()
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._identified = False
        self._fail_pending("Broadcaster closed")

    async def request(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._is_closed() or not self._identified:
            raise TransportError("Broadcaster is not connected")
        request_id = new_correlation_id()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(
                {
                    "op": OP_REQUEST,
                    "d": {
                        "requestType": request_type,
                        "requestId": request_id,
                        "requestData": data or {},
                    },
                }
            )
            async with asyncio.timeout(self._settings.connection_timeout_ms / 1000):
                response = await future
        finally:
            self._pending.pop(request_id, None)
        status = response.get("requestStatus") or {}
        if not status.get("result"):
            raise TransportError(
                f"{request_type} failed: {status.get('comment') or status.get('code')}"
            )
        return response.get("responseData") or {}

    async def set_text(self, source: str, text: str) -> None:
        await self.request("SetInputSettings", {"inputName": source, "inputSettings": {"text": text}})

    async def set_visibility(self, scene: str, source: str, visible: bool) -> None:
        item_id = await self._scene_item_id(scene, source)
        await self.request(
            "SetSceneItemEnabled",
            {"sceneName": scene, "sceneItemId": item_id, "sceneItemEnabled": visible},
        )

    async def restart_media(self, input_name: str) -> None:
        await self.request(
            "TriggerMediaInputAction", {"inputName": input_name, "mediaAction": MEDIA_RESTART}
        )

    async def set_filter_settings(
        self, source: str, filter_name: str, settings: dict[str, Any]
    ) -> None:
        await self.request(
            "SetSourceFilterSettings",
            {"sourceName": source, "filterName": filter_name, "filterSettings": settings},
        )

    async def _scene_item_id(self, scene: str, source: str) -> int:
        key = (scene, source)
        cached = self._scene_items.get(key)
        if cached is not None:
            return cached
        data = await self.request("GetSceneItemId", {"sceneName": scene, "sourceName": source})
        item_id = int(data["sceneItemId"])
        self._scene_items[key] = item_id
        return item_id

    async def _read_loop(self) -> None:
        assert self._ws is not None
        async for raw in self._ws:
            try:
                message = self._decode(raw)
            except orjson.JSONDecodeError:
                logger.warning("obs_decode_failed")
                continue
            if message.get("op") != OP_REQUEST_RESPONSE:
                continue
            data = message.get("d") or {}
            future = self._pending.get(str(data.get("requestId")))
            if future is not None and not future.done():
                future.set_result(data)

    async def _send(self, payload: dict[str, Any]) -> None:
        await self._ws.send(orjson.dumps(payload).decode("utf-8"))

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()

    def _is_closed(self) -> bool:
        if self._ws is None:
            return True
        return self._ws.state in {State.CLOSING, State.CLOSED}

    @staticmethod
    def _decode(raw: str | bytes) -> dict[str, Any]:
        payload = orjson.loads(raw)
        return payload if isinstance(payload, dict) else {}


class BroadcasterEffects:
    """Plays a VFX by restarting its media source and holding for its duration."""

    def __init__(self, broadcaster: BroadcasterPort, clock: ClockPort) -> None:
        self._broadcaster = broadcaster
        self._clock = clock

    async def run_command(self, vfx: VfxConfig, context: dict[str, Any]) -> dict[str, Any]:
        if not vfx.media_source:
            raise ValueError(f"No media source configured for {vfx.command_key}")
        await self._broadcaster.restart_media(vfx.media_source)
        await self._clock.sleep(vfx.duration_ms / 1000)
        logger.debug(
            "effect_played",
            command_key=vfx.command_key,
            media_source=vfx.media_source,
            correlation_id=context.get("correlation_id"),
        )
        return {"media_source": vfx.media_source, "duration_ms": vfx.duration_ms}
