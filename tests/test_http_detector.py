from __future__ import annotations

import asyncio

import httpx
import pytest

from stream_notification_engine.adapters.http_detector import HttpStreamDetector
from stream_notification_engine.config import DetectorSettings


def _detector(handler, **settings) -> HttpStreamDetector:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStreamDetector(DetectorSettings(**settings), client=client)


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"isLive": True}, True),
        ({"is_live": False}, False),
        ({"live": 1}, True),
        ({"data": [{"id": "stream"}]}, True),
        ({"data": []}, False),
        (["not", "a", "mapping"], False),
    ],
)
def test_is_live_payload_shapes(payload, expected) -> None:
    assert HttpStreamDetector._is_live(payload) is expected


@pytest.mark.asyncio
async def test_probe_retries_server_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"isLive": True})

    detector = _detector(handler, retry_max_attempts=2)
    assert await detector.probe("https://status.example/live") is True
    assert calls["count"] == 2
    await detector.stop()


@pytest.mark.asyncio
async def test_probe_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404)

    detector = _detector(handler, retry_max_attempts=3)
    with pytest.raises(httpx.HTTPStatusError):
        await detector.probe("https://status.example/live")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_without_status_url_connects_immediately() -> None:
    detector = _detector(lambda request: httpx.Response(500))
    statuses: list[tuple[bool, str | None]] = []
    connected: list[bool] = []

    async def connect() -> None:
        connected.append(True)

    await detector.start_stream_detection(
        "custom", {}, connect, lambda live, reason: statuses.append((live, reason))
    )
    assert connected == [True]
    assert statuses == [(True, "no status url")]


@pytest.mark.asyncio
async def test_polling_connects_once_live() -> None:
    detector = _detector(lambda request: httpx.Response(200, json={"is_live": True}), poll_interval_sec=0.01)
    connected = asyncio.Event()
    statuses: list[bool] = []

    async def connect() -> None:
        connected.set()

    await detector.start_stream_detection(
        "twitch",
        {"status_url": "https://status.example/twitch"},
        connect,
        lambda live, reason: statuses.append(live),
    )
    await asyncio.wait_for(connected.wait(), timeout=1)
    await asyncio.sleep(0.05)
    await detector.stop()
    assert statuses == [True]
