from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from stream_notification_engine.config import DetectorSettings
from stream_notification_engine.ports.detector import ConnectCallback, StatusCallback

logger = structlog.get_logger(__name__)

LIVE_KEYS = ("isLive", "is_live", "live")


class HttpStreamDetector:
    """Polls a per-platform status URL and connects the adapter once the stream is live."""

    def __init__(self, settings: DetectorSettings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout_sec)
        self._owns_client = client is None
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._connected: set[str] = set()

    async def start_stream_detection(
        self,
        platform: str,
        config: Mapping[str, Any],
        connect: ConnectCallback,
        status: StatusCallback,
    ) -> None:
        status_url = config.get("status_url")
        if not status_url:
            # Without a status endpoint the stream is assumed live.
            await self._notify(status, True, "no status url")
            await connect()
            self._connected.add(platform)
            return
        previous = self._tasks.get(platform)
        if previous is not None and not previous.done():
            return
        self._tasks[platform] = asyncio.create_task(
            self._poll(platform, str(status_url), connect, status)
        )

    async def _poll(
        self, platform: str, status_url: str, connect: ConnectCallback, status: StatusCallback
    ) -> None:
        last_live: bool | None = None
        while True:
            try:
                live = await self.probe(status_url)
            except Exception as exc:  # noqa: BLE001
                logger.warning("stream_probe_failed", platform=platform, error=str(exc))
                live = None
            if live is not None and live != last_live:
                await self._notify(status, live, None)
                last_live = live
            if live and platform not in self._connected:
                try:
                    await connect()
                    self._connected.add(platform)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("stream_connect_failed", platform=platform, error=str(exc))
            elif live is False:
                self._connected.discard(platform)
            await asyncio.sleep(self._settings.poll_interval_sec)

    async def probe(self, status_url: str) -> bool:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.retry_max_attempts),
            wait=wait_exponential_jitter(initial=0.5, max=5),
            retry=retry_if_exception(self._is_retryable_http_error),
            reraise=True,
        ):
            with attempt:
                resp = await self._client.get(status_url)
                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    raise httpx.HTTPStatusError(
                        "Retryable HTTP status", request=resp.request, response=resp
                    )
                resp.raise_for_status()
                return self._is_live(resp.json())
        return False

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._connected.clear()
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    async def _notify(status: StatusCallback, live: bool, reason: str | None) -> None:
        result = status(live, reason)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _is_live(payload: Any) -> bool:
        if isinstance(payload, Mapping):
            for key in LIVE_KEYS:
                if key in payload:
                    return bool(payload[key])
            data = payload.get("data")
            if isinstance(data, list):
                return len(data) > 0
        return False

    @staticmethod
    def _is_retryable_http_error(exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return status == 429 or 500 <= status < 600
        return isinstance(exc, httpx.RequestError)
