from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from stream_notification_engine.config import ConfigService, CooldownSettings
from stream_notification_engine.ports.bus import EventBusPort, Unsubscribe
from stream_notification_engine.ports.clock import ClockPort

logger = structlog.get_logger(__name__)

GLOBAL_ENTRY_TTL_MS = 600_000


def _seconds_to_ms(value: float, fallback_ms: int) -> int:
    if value is None or value <= 0:
        return fallback_ms
    return int(value * 1000)


class CommandCooldownService:
    """Per-user chat command cooldowns with heavy-usage escalation."""

    def __init__(
        self,
        config: ConfigService,
        clock: ClockPort,
        bus: EventBusPort | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._bus = bus
        self._user_last: dict[str, int] = {}
        self._user_heavy: dict[str, bool] = {}
        self._user_history: dict[str, list[int]] = {}
        self._global_last: dict[str, int] = {}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._unsubscribe: Unsubscribe | None = None
        self.load_config(config.settings.cooldowns)
        if bus is not None:
            self._unsubscribe = bus.subscribe("config:changed", self._on_config_changed)

    def load_config(self, settings: CooldownSettings) -> None:
        defaults = CooldownSettings()
        self._default_ms = _seconds_to_ms(
            settings.default_cooldown_sec, int(defaults.default_cooldown_sec * 1000)
        )
        self._heavy_ms = _seconds_to_ms(
            settings.heavy_command_cooldown_sec, int(defaults.heavy_command_cooldown_sec * 1000)
        )
        self._heavy_window_ms = _seconds_to_ms(
            settings.heavy_command_window_sec, int(defaults.heavy_command_window_sec * 1000)
        )
        self._heavy_threshold = settings.heavy_command_threshold or defaults.heavy_command_threshold
        self._max_entries = settings.max_entries or defaults.max_entries
        self._cleanup_interval_sec = settings.cleanup_interval_sec or defaults.cleanup_interval_sec

    @property
    def default_cooldown_ms(self) -> int:
        return self._default_ms

    @property
    def heavy_cooldown_ms(self) -> int:
        return self._heavy_ms

    def check_user_cooldown(
        self,
        user_id: str,
        cooldown_ms: int | None = None,
        heavy_cooldown_ms: int | None = None,
    ) -> bool:
        if not user_id:
            logger.warning("cooldown_invalid_user")
            return False
        regular = self._default_ms if cooldown_ms is None else cooldown_ms
        heavy = self._heavy_ms if heavy_cooldown_ms is None else heavy_cooldown_ms
        if regular < 0 or heavy < 0:
            logger.warning("cooldown_negative_window", user_id=user_id)
            return False

        now = self._clock.monotonic_ms()
        last = self._user_last.get(user_id)
        elapsed = now - last if last is not None else None

        if self._user_heavy.get(user_id):
            remaining = heavy - (elapsed or 0)
            if elapsed is not None and remaining > 0:
                self._blocked(user_id, "heavy", remaining)
                return False
            self._user_heavy[user_id] = False

        if elapsed is not None:
            remaining = regular - elapsed
            if remaining > 0:
                self._blocked(user_id, "regular", remaining)
                return False
        return True

    def check_global_cooldown(self, command_name: str, cooldown_ms: int) -> bool:
        if not command_name or cooldown_ms <= 0:
            return True
        last = self._global_last.get(command_name)
        if last is None:
            return True
        remaining = cooldown_ms - (self._clock.monotonic_ms() - last)
        if remaining > 0:
            logger.debug("global_cooldown_blocked", command=command_name, remaining_ms=remaining)
            if self._bus is not None:
                self._bus.emit(
                    "cooldown:global-blocked",
                    {"command_name": command_name, "remaining_ms": remaining},
                )
            return False
        return True

    def update_user_cooldown(self, user_id: str) -> None:
        if not user_id:
            logger.warning("cooldown_invalid_user")
            return
        now = self._clock.monotonic_ms()
        self._user_last[user_id] = now
        window_start = now - self._heavy_window_ms
        history = [ts for ts in self._user_history.get(user_id, []) if ts >= window_start]
        history.append(now)
        self._user_history[user_id] = history
        if len(history) >= self._heavy_threshold:
            self._user_heavy[user_id] = True
            logger.debug("cooldown_heavy_detected", user_id=user_id, count=len(history))

    def update_global_cooldown(self, command_name: str) -> None:
        if command_name:
            self._global_last[command_name] = self._clock.monotonic_ms()

    def cleanup_expired_cooldowns(self) -> int:
        cleaned = 0
        if len(self._user_history) > self._max_entries:
            oldest = list(self._user_history)[: self._max_entries // 2]
            for user_id in oldest:
                self._user_history.pop(user_id, None)
                self._user_last.pop(user_id, None)
                self._user_heavy.pop(user_id, None)
                cleaned += 1
        now = self._clock.monotonic_ms()
        for command_name, ts in list(self._global_last.items()):
            if now - ts > GLOBAL_ENTRY_TTL_MS:
                del self._global_last[command_name]
                cleaned += 1
        if cleaned:
            logger.debug("cooldown_cleanup", removed=cleaned)
        return cleaned

    def get_cooldown_status(self, user_id: str) -> dict[str, Any]:
        now = self._clock.monotonic_ms()
        last = self._user_last.get(user_id)
        return {
            "user_id": user_id,
            "last_command_time": last,
            "is_heavy_limit": self._user_heavy.get(user_id, False),
            "command_count": len(self._user_history.get(user_id, [])),
            "time_since_last_command": None if last is None else now - last,
        }

    def reset_user_cooldown(self, user_id: str) -> None:
        self._user_last.pop(user_id, None)
        self._user_heavy.pop(user_id, None)
        self._user_history.pop(user_id, None)
        logger.debug("cooldown_reset", user_id=user_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "config": {
                "default_cooldown_ms": self._default_ms,
                "heavy_command_cooldown_ms": self._heavy_ms,
                "heavy_command_threshold": self._heavy_threshold,
                "heavy_command_window_ms": self._heavy_window_ms,
                "max_entries": self._max_entries,
            },
            "active_users": len(self._user_last),
            "heavy_limit_users": sum(1 for flag in self._user_heavy.values() if flag),
            "global_commands_tracked": len(self._global_last),
        }

    def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await self._clock.sleep(self._cleanup_interval_sec)
            self.cleanup_expired_cooldowns()

    def _blocked(self, user_id: str, kind: str, remaining_ms: int) -> None:
        logger.debug("user_cooldown_blocked", user_id=user_id, kind=kind, remaining_ms=remaining_ms)
        if self._bus is not None:
            self._bus.emit(
                "cooldown:blocked",
                {"user_id": user_id, "type": kind, "remaining_ms": remaining_ms},
            )

    def _on_config_changed(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        section = payload.get("section")
        if section not in (None, "cooldowns"):
            return
        self.load_config(self._config.settings.cooldowns)
