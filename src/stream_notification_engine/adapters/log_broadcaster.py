from __future__ import annotations

from typing import Any

import structlog

from stream_notification_engine.domain.display import VfxConfig
from stream_notification_engine.ports.clock import ClockPort

logger = structlog.get_logger(__name__)


class LogBroadcaster:
    """Broadcaster that only records and logs what would be shown."""

    def __init__(self) -> None:
        self.texts: dict[str, str] = {}
        self.visibility: dict[tuple[str, str], bool] = {}
        self.filters: dict[tuple[str, str], dict[str, Any]] = {}
        self.media_restarts: list[str] = []

    async def is_ready(self) -> bool:
        return True

    async def set_text(self, source: str, text: str) -> None:
        self.texts[source] = text
        if text:
            logger.info("broadcast_text", source=source, text=text)

    async def set_visibility(self, scene: str, source: str, visible: bool) -> None:
        key = (scene, source)
        if self.visibility.get(key) == visible:
            return
        self.visibility[key] = visible
        logger.debug("broadcast_visibility", scene=scene, source=source, visible=visible)

    async def restart_media(self, input_name: str) -> None:
        self.media_restarts.append(input_name)
        logger.debug("broadcast_media_restart", input=input_name)

    async def set_filter_settings(
        self, source: str, filter_name: str, settings: dict[str, Any]
    ) -> None:
        self.filters[(source, filter_name)] = dict(settings)


class LogEffects:
    def __init__(self, clock: ClockPort, simulate_duration: bool = False) -> None:
        self._clock = clock
        self._simulate_duration = simulate_duration
        self.played: list[VfxConfig] = []

    async def run_command(self, vfx: VfxConfig, context: dict[str, Any]) -> dict[str, Any]:
        self.played.append(vfx)
        logger.info(
            "effect_played",
            command_key=vfx.command_key,
            media_source=vfx.media_source,
            username=context.get("username"),
        )
        if self._simulate_duration:
            await self._clock.sleep(vfx.duration_ms / 1000)
        return {"media_source": vfx.media_source, "duration_ms": vfx.duration_ms}
