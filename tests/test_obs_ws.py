from __future__ import annotations

import asyncio
import base64
import json

import pytest
from websockets.protocol import State

from stream_notification_engine.adapters.log_broadcaster import LogBroadcaster, LogEffects
from stream_notification_engine.adapters.obs_ws import (
    MEDIA_RESTART,
    BroadcasterEffects,
    ObsWebSocketBroadcaster,
    auth_response,
)
from stream_notification_engine.config import ObsSettings
from stream_notification_engine.domain.display import VfxConfig
from stream_notification_engine.errors import TransportError

from conftest import FakeBroadcaster, FakeClock


class FakeObsServer:
    """Speaks just enough obs-websocket v5 for one session."""

    def __init__(self, authentication: dict | None = None, failing: tuple[str, ...] = ()) -> None:
        hello = {"op": 0, "d": {"rpcVersion": 1}}
        if authentication is not None:
            hello["d"]["authentication"] = authentication
        self._handshake = [json.dumps(hello), json.dumps({"op": 2, "d": {"negotiatedRpcVersion": 1}})]
        self._responses: asyncio.Queue[str | None] = asyncio.Queue()
        self._failing = failing
        self.sent: list[dict] = []
        self.state = State.OPEN

    async def recv(self) -> str:
        return self._handshake.pop(0)

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if message["op"] != 6:
            return
        request = message["d"]
        ok = request["requestType"] not in self._failing
        response_data = {"sceneItemId": 7} if request["requestType"] == "GetSceneItemId" else {}
        await self._responses.put(
            json.dumps(
                {
                    "op": 7,
                    "d": {
                        "requestType": request["requestType"],
                        "requestId": request["requestId"],
                        "requestStatus": {"result": ok, "code": 100 if ok else 600, "comment": None},
                        "responseData": response_data,
                    },
                }
            )
        )

    def __aiter__(self):
        async def _iter():
            while True:
                item = await self._responses.get()
                if item is None:
                    return
                yield item

        return _iter()

    async def close(self) -> None:
        self.state = State.CLOSED
        self._responses.put_nowait(None)

    def requests(self, request_type: str) -> list[dict]:
        return [
            message["d"]["requestData"]
            for message in self.sent
            if message["op"] == 6 and message["d"]["requestType"] == request_type
        ]


def _broadcaster(server: FakeObsServer, **settings) -> ObsWebSocketBroadcaster:
    async def connector(address: str, **kwargs):
        assert address == "ws://obs.local:4455"
        return server

    obs = ObsSettings(address="ws://obs.local:4455", connection_timeout_ms=1000, **settings)
    return ObsWebSocketBroadcaster(obs, connector=connector)


def test_auth_response_is_deterministic_base64() -> None:
    first = auth_response("secret", "salt", "challenge")
    assert first == auth_response("secret", "salt", "challenge")
    assert first != auth_response("secret", "salt", "other")
    assert len(base64.b64decode(first)) == 32


@pytest.mark.asyncio
async def test_connect_identifies_with_authentication() -> None:
    server = FakeObsServer(authentication={"salt": "s", "challenge": "c"})
    broadcaster = _broadcaster(server, password="hunter2")
    await broadcaster.connect()

    identify = server.sent[0]
    assert identify["op"] == 1
    assert identify["d"]["authentication"] == auth_response("hunter2", "s", "c")
    assert await broadcaster.is_ready() is True
    await broadcaster.close()
    assert await broadcaster.is_ready() is False


@pytest.mark.asyncio
async def test_connect_without_password_fails_when_auth_required() -> None:
    server = FakeObsServer(authentication={"salt": "s", "challenge": "c"})
    broadcaster = _broadcaster(server)
    with pytest.raises(TransportError, match="requires a password"):
        await broadcaster.connect()


@pytest.mark.asyncio
async def test_requests_map_to_obs_calls() -> None:
    server = FakeObsServer()
    broadcaster = _broadcaster(server)
    await broadcaster.connect()

    await broadcaster.set_text("notification-text", "hello")
    await broadcaster.set_visibility("scene", "group", True)
    await broadcaster.set_visibility("scene", "group", False)
    await broadcaster.restart_media("gift-video")
    await broadcaster.set_filter_settings("cam", "Glow", {"Size": 5})

    assert server.requests("SetInputSettings") == [
        {"inputName": "notification-text", "inputSettings": {"text": "hello"}}
    ]
    assert len(server.requests("GetSceneItemId")) == 1
    assert [data["sceneItemEnabled"] for data in server.requests("SetSceneItemEnabled")] == [True, False]
    assert server.requests("SetSceneItemEnabled")[0]["sceneItemId"] == 7
    assert server.requests("TriggerMediaInputAction")[0]["mediaAction"] == MEDIA_RESTART
    assert server.requests("SetSourceFilterSettings")[0]["filterSettings"] == {"Size": 5}
    await broadcaster.close()


@pytest.mark.asyncio
async def test_failed_request_raises_transport_error() -> None:
    server = FakeObsServer(failing=("SetInputSettings",))
    broadcaster = _broadcaster(server)
    await broadcaster.connect()
    with pytest.raises(TransportError, match="SetInputSettings failed"):
        await broadcaster.set_text("missing-source", "x")
    await broadcaster.close()


@pytest.mark.asyncio
async def test_request_before_connect_is_rejected() -> None:
    broadcaster = _broadcaster(FakeObsServer())
    with pytest.raises(TransportError, match="not connected"):
        await broadcaster.restart_media("gift-video")


@pytest.mark.asyncio
async def test_broadcaster_effects_restart_media_for_duration() -> None:
    broadcaster = FakeBroadcaster()
    clock = FakeClock()
    effects = BroadcasterEffects(broadcaster, clock)
    vfx = VfxConfig(command_key="hype", command="!hype", media_source="hype-media", duration_ms=2500)

    result = await effects.run_command(vfx, {"correlation_id": "c1"})
    assert broadcaster.calls == [("media", "hype-media")]
    assert clock.sleeps == [2.5]
    assert result == {"media_source": "hype-media", "duration_ms": 2500}

    with pytest.raises(ValueError, match="No media source configured for bare"):
        await effects.run_command(VfxConfig(command_key="bare"), {})


@pytest.mark.asyncio
async def test_log_broadcaster_and_effects_record_state() -> None:
    broadcaster = LogBroadcaster()
    await broadcaster.set_text("notification-text", "hi")
    await broadcaster.set_visibility("scene", "group", True)
    await broadcaster.restart_media("gift-audio")
    assert broadcaster.texts == {"notification-text": "hi"}
    assert broadcaster.visibility == {("scene", "group"): True}
    assert broadcaster.media_restarts == ["gift-audio"]

    effects = LogEffects(FakeClock())
    vfx = VfxConfig(command_key="hype", media_source="hype-media")
    await effects.run_command(vfx, {"username": "a"})
    assert effects.played == [vfx]
