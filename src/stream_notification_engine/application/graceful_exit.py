from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

FORCE_EXIT_TIMEOUT_SEC = 10.0
FORCED_EXIT_STATUS = 1


class GracefulExitService:
    """Shuts the runtime down once a target number of chat messages has been seen."""

    def __init__(
        self,
        target_message_count: int | None,
        shutdown: Callable[[], Awaitable[Any]],
        exit_process: Callable[[int], Any] = sys.exit,
        timeout_sec: float = FORCE_EXIT_TIMEOUT_SEC,
    ) -> None:
        self._target = target_message_count if target_message_count and target_message_count > 0 else None
        self._shutdown = shutdown
        self._exit_process = exit_process
        self._timeout_sec = timeout_sec
        self._count = 0
        self._triggered = False
        self._exit_task: asyncio.Task[None] | None = None

    @property
    def is_enabled(self) -> bool:
        return self._target is not None

    @property
    def message_count(self) -> int:
        return self._count

    def increment_message_count(self) -> bool:
        """Count one message; returns True when this message reached the target."""
        if self._target is None or self._triggered:
            return False
        self._count += 1
        if self._count < self._target:
            return False
        self._triggered = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return True
        self._exit_task = loop.create_task(self._run_exit())
        return True

    async def trigger_exit(self) -> None:
        if self._triggered:
            return
        self._triggered = True
        await self._run_exit()

    async def _run_exit(self) -> None:
        logger.info("graceful_exit_triggered", messages=self._count, target=self._target)
        try:
            async with asyncio.timeout(self._timeout_sec):
                await self._shutdown()
        except TimeoutError:
            logger.error("graceful_exit_timeout", timeout_sec=self._timeout_sec)
            self._exit_process(FORCED_EXIT_STATUS)
        except Exception as exc:  # noqa: BLE001
            logger.error("graceful_exit_failed", error=str(exc))
            self._exit_process(FORCED_EXIT_STATUS)

    async def wait_for_exit(self) -> None:
        if self._exit_task is not None:
            await self._exit_task

    def get_stats(self) -> dict[str, Any]:
        remaining = None if self._target is None else max(0, self._target - self._count)
        return {
            "enabled": self.is_enabled,
            "target_messages": self._target,
            "current_messages": self._count,
            "remaining_messages": remaining,
            "triggered": self._triggered,
        }
