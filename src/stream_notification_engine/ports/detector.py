from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

ConnectCallback = Callable[[], Awaitable[None]]
StatusCallback = Callable[[bool, str | None], Awaitable[None] | None]


class StreamDetectorPort(Protocol):
    async def start_stream_detection(
        self,
        platform: str,
        config: Mapping[str, Any],
        connect: ConnectCallback,
        status: StatusCallback,
    ) -> None: ...

    async def stop(self) -> None: ...
