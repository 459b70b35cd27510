from __future__ import annotations

import asyncio
import inspect
from typing import Any

from stream_notification_engine.config import ConfigService, Settings


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms
        self._mono = 0
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self._now

    def monotonic_ms(self) -> int:
        return self._mono

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(int(seconds * 1000))
        await asyncio.sleep(0)

    def advance(self, ms: int) -> None:
        self._now += ms
        self._mono += ms


class CaptureBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, Any]] = []
        self._handlers: dict[str, list[Any]] = {}

    def subscribe(self, topic: str, handler):
        self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, topic: str, payload: Any) -> None:
        self.published.append((topic, payload))
        for handler in list(self._handlers.get(topic, [])):
            result = handler(payload)
            if inspect.isawaitable(result):
                await result

    def emit(self, topic: str, payload: Any) -> None:
        self.published.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]

    def payloads(self, topic: str) -> list[Any]:
        return [payload for name, payload in self.published if name == topic]


class FakeBroadcaster:
    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.calls: list[tuple] = []
        self.fail_text = False

    async def is_ready(self) -> bool:
        return self.ready

    async def set_text(self, source: str, text: str) -> None:
        if self.fail_text:
            raise RuntimeError("text source unavailable")
        self.calls.append(("text", source, text))

    async def set_visibility(self, scene: str, source: str, visible: bool) -> None:
        self.calls.append(("visibility", scene, source, visible))

    async def restart_media(self, input_name: str) -> None:
        self.calls.append(("media", input_name))

    async def set_filter_settings(self, source: str, filter_name: str, settings: dict) -> None:
        self.calls.append(("filter", source, filter_name, dict(settings)))

    def texts(self, source: str) -> list[str]:
        return [call[2] for call in self.calls if call[0] == "text" and call[1] == source]

    def visibility(self, source: str) -> list[bool]:
        return [call[3] for call in self.calls if call[0] == "visibility" and call[2] == source]


class FakeEffects:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.runs: list[tuple[Any, dict]] = []

    async def run_command(self, vfx, context: dict) -> dict:
        if self.fail:
            raise RuntimeError("effects engine offline")
        self.runs.append((vfx, context))
        return {"played": vfx.command_key}


class FakeAdapter:
    def __init__(self, config: dict | None = None) -> None:
        self.config = config or {}
        self.handlers: dict[str, Any] = {}
        self.initialized = 0
        self.cleaned = 0
        self.fail_cleanup = False

    async def initialize(self, handlers) -> dict:
        self.handlers = dict(handlers)
        self.initialized += 1
        return {"success": True}

    async def cleanup(self) -> dict:
        self.cleaned += 1
        if self.fail_cleanup:
            raise RuntimeError("cleanup exploded")
        return {"success": True}

    def on(self, event_name: str, handler) -> None:
        self.handlers[event_name] = handler


class FakeStreamDetector:
    def __init__(self, live: bool = False) -> None:
        self.live = live
        self.calls: list[tuple[str, dict]] = []
        self.stopped = False

    async def start_stream_detection(self, platform, config, connect, status) -> None:
        self.calls.append((platform, dict(config)))
        if self.live:
            status(True, None)
            await connect()

    async def stop(self) -> None:
        self.stopped = True


class FakeGoals:
    def __init__(self) -> None:
        self.donations: list[tuple[str, float]] = []
        self.paypiggies: list[str] = []

    async def process_donation_goal(self, platform: str, amount: float) -> dict:
        self.donations.append((platform, amount))
        return {"success": True}

    async def process_paypiggy_goal(self, platform: str) -> dict:
        self.paypiggies.append(platform)
        return {"success": True}


def make_config(bus=None, **sections: Any) -> ConfigService:
    sections.setdefault("display_queue", {"auto_process": False})
    return ConfigService(Settings(**sections), bus=bus)
