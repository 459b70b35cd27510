from __future__ import annotations

from typing import Any, Protocol

from stream_notification_engine.domain.display import VfxConfig


class BroadcasterPort(Protocol):
    async def is_ready(self) -> bool: ...

    async def set_text(self, source: str, text: str) -> None: ...

    async def set_visibility(self, scene: str, source: str, visible: bool) -> None: ...

    async def restart_media(self, input_name: str) -> None: ...

    async def set_filter_settings(
        self, source: str, filter_name: str, settings: dict[str, Any]
    ) -> None: ...


class EffectsPort(Protocol):
    async def run_command(self, vfx: VfxConfig, context: dict[str, Any]) -> Any: ...
