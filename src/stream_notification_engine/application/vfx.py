from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from stream_notification_engine.application.commands import CommandParser
from stream_notification_engine.application.timestamps import iso_from_ms
from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.display import CommandResult, CooldownInfo, VfxConfig
from stream_notification_engine.domain.events import (
    EventMetadata,
    EventType,
    Platform,
    VfxCommandExecutedEvent,
    VfxEffectCompletedEvent,
)
from stream_notification_engine.ports.broadcaster import EffectsPort
from stream_notification_engine.ports.bus import EventBusPort, Unsubscribe
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.util.ids import new_correlation_id

logger = structlog.get_logger(__name__)

COMMAND_RECEIVED_TOPIC = "vfx:command-received"
COMMAND_FAILED_TOPIC = "vfx:command-failed"
COOLDOWN_BLOCKED_TOPIC = "vfx:cooldown-blocked"


def select_command_variant(
    spec: str | None, choose: Callable[[Sequence[str]], str] = random.choice
) -> str | None:
    if not spec or not isinstance(spec, str):
        return None
    normalized = spec.strip()
    if not normalized:
        return None
    if "|" not in normalized:
        return normalized
    options = [option.strip() for option in normalized.split("|") if option.strip()]
    if not options:
        return None
    return choose(options)


class VFXCommandService:
    """Cooldown-gated dispatch of chat and notification commands to the effects engine."""

    def __init__(
        self,
        config: ConfigService,
        effects: EffectsPort,
        clock: ClockPort,
        bus: EventBusPort | None = None,
        parser: CommandParser | None = None,
        choose: Callable[[Sequence[str]], str] = random.choice,
    ) -> None:
        self._config = config
        self._effects = effects
        self._clock = clock
        self._bus = bus
        self._choose = choose
        self._parser = parser or self._build_parser()
        self._user_last: dict[tuple[str, str], int] = {}
        self._global_last: dict[str, int] = {}
        self._unsubscribe: Unsubscribe | None = None
        self._stats: dict[str, float] = {
            "total_commands": 0,
            "successful_commands": 0,
            "failed_commands": 0,
            "cooldown_blocked": 0,
            "avg_execution_time_ms": 0.0,
        }

    @property
    def parser(self) -> CommandParser:
        return self._parser

    def _build_parser(self) -> CommandParser:
        settings = self._config.settings
        return CommandParser(
            settings.commands,
            vfx_file_path=settings.general.vfx_file_path,
            keyword_parsing_enabled=settings.general.keyword_parsing_enabled,
        )

    def start(self) -> None:
        if self._bus is not None and self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(COMMAND_RECEIVED_TOPIC, self._on_command_received)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def reload_config(self) -> bool:
        try:
            self._parser = self._build_parser()
        except Exception as exc:  # noqa: BLE001
            logger.warning("vfx_config_reload_failed", error=str(exc))
            return False
        logger.info("vfx_config_reloaded")
        return True

    async def select_vfx_command(
        self, message: str | None, context_message: str | None = None
    ) -> VfxConfig | None:
        if not message or not message.strip():
            raise ValueError("VFXCommandService requires message")
        return self._parser.get_vfx_config(message.strip(), context_message or message)

    async def get_vfx_config(self, command_key: str, message: str | None = None) -> VfxConfig | None:
        if not command_key:
            raise ValueError("VFX config lookup requires command_key")
        spec = self._config.get_command(command_key)
        if not spec:
            logger.debug("vfx_command_unconfigured", command_key=command_key)
            return None
        selected = select_command_variant(spec, self._choose)
        if selected is None:
            return None
        return await self.select_vfx_command(selected, message if message is not None else selected)

    def check_command_cooldown(self, user_id: str, command_key: str) -> CooldownInfo:
        now = self._clock.monotonic_ms()
        general = self._config.settings.general
        user_cooldown_ms = int(general.cmd_cooldown_sec * 1000)
        global_cooldown_ms = int(general.global_cmd_cooldown_ms)

        last_user = self._user_last.get((user_id, command_key))
        if last_user is not None and user_cooldown_ms > 0:
            elapsed = now - last_user
            if elapsed < user_cooldown_ms:
                return CooldownInfo(
                    allowed=False,
                    type="user",
                    remaining_ms=user_cooldown_ms - elapsed,
                    cooldown_ms=user_cooldown_ms,
                )

        last_global = self._global_last.get(command_key)
        if last_global is not None and global_cooldown_ms > 0:
            elapsed = now - last_global
            if elapsed < global_cooldown_ms:
                return CooldownInfo(
                    allowed=False,
                    type="global",
                    remaining_ms=global_cooldown_ms - elapsed,
                    cooldown_ms=global_cooldown_ms,
                )
        return CooldownInfo(allowed=True)

    async def execute_command(
        self,
        command: str | None,
        *,
        user_id: str,
        platform: str,
        username: str | None = None,
        skip_cooldown: bool = False,
        notification_type: str | None = None,
        correlation_id: str | None = None,
    ) -> CommandResult:
        started = self._clock.monotonic_ms()
        self._stats["total_commands"] += 1
        try:
            vfx = await self.select_vfx_command(command, command)
        except Exception as exc:  # noqa: BLE001
            self._stats["failed_commands"] += 1
            logger.warning("vfx_command_failed", command=command, error=str(exc))
            return CommandResult(success=False, error=str(exc), command=command)
        if vfx is None:
            return CommandResult(success=False, error="Command not found", command=command)

        if not skip_cooldown:
            cooldown = self.check_command_cooldown(user_id, vfx.command_key)
            if not cooldown.allowed:
                self._stats["cooldown_blocked"] += 1
                logger.info(
                    "vfx_cooldown_blocked",
                    command=command,
                    user_id=user_id,
                    kind=cooldown.type,
                    remaining_ms=cooldown.remaining_ms,
                )
                if self._bus is not None:
                    self._bus.emit(
                        COOLDOWN_BLOCKED_TOPIC,
                        {"command": command, "user_id": user_id, "cooldown": cooldown},
                    )
                return CommandResult(
                    success=False,
                    error="Command on cooldown",
                    command=command,
                    command_key=vfx.command_key,
                    cooldown_info=cooldown,
                )

        correlation = correlation_id or new_correlation_id()
        context: dict[str, Any] = {
            "username": username,
            "user_id": user_id,
            "platform": platform,
            "notification_type": notification_type,
            "skip_cooldown": skip_cooldown,
            "correlation_id": correlation,
        }
        try:
            result = await self._effects.run_command(vfx, context)
        except Exception as exc:  # noqa: BLE001
            self._stats["failed_commands"] += 1
            logger.warning("vfx_command_failed", command=command, error=str(exc))
            if self._bus is not None:
                await self._bus.publish(
                    COMMAND_FAILED_TOPIC,
                    {"command": command, "vfx_config": vfx, "error": str(exc), **context},
                )
            return CommandResult(
                success=False,
                error=str(exc),
                command=command,
                command_key=vfx.command_key,
                vfx_config=vfx,
            )

        if not skip_cooldown:
            now = self._clock.monotonic_ms()
            self._user_last[(user_id, vfx.command_key)] = now
            self._global_last[vfx.command_key] = now

        elapsed_ms = max(1, self._clock.monotonic_ms() - started)
        self._stats["successful_commands"] += 1
        total = self._stats["total_commands"]
        avg = self._stats["avg_execution_time_ms"]
        self._stats["avg_execution_time_ms"] = (avg * (total - 1) + elapsed_ms) / total
        logger.info(
            "vfx_command_executed",
            command=command,
            command_key=vfx.command_key,
            user_id=user_id,
            platform=platform,
        )
        await self._publish_completion(command, vfx, context, elapsed_ms)
        return CommandResult(
            success=True,
            command=command,
            command_key=vfx.command_key,
            vfx_config=vfx,
            duration_ms=elapsed_ms,
            result=result,
        )

    async def execute_command_for_key(
        self,
        command_key: str | None,
        *,
        user_id: str,
        platform: str,
        username: str | None = None,
        skip_cooldown: bool = False,
        message: str | None = None,
        notification_type: str | None = None,
        correlation_id: str | None = None,
    ) -> CommandResult:
        if not command_key:
            return CommandResult(success=False, error="Missing command key")
        if not self._config.get_command(command_key):
            return CommandResult(
                success=False, error=f"No VFX configured for {command_key}", command_key=command_key
            )
        try:
            vfx = await self.get_vfx_config(command_key, message)
        except Exception as exc:  # noqa: BLE001
            logger.warning("vfx_command_failed", command_key=command_key, error=str(exc))
            return CommandResult(success=False, error=str(exc), command_key=command_key)
        if vfx is None or not vfx.command:
            return CommandResult(
                success=False, error=f"No VFX configured for {command_key}", command_key=command_key
            )
        return await self.execute_command(
            vfx.command,
            user_id=user_id,
            platform=platform,
            username=username,
            skip_cooldown=skip_cooldown,
            notification_type=notification_type,
            correlation_id=correlation_id,
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "is_active": True,
            "active_cooldowns": {
                "users": len(self._user_last),
                "global_commands": len(self._global_last),
            },
            "parser": self._parser.get_stats(),
            "stats": dict(self._stats),
        }

    async def _publish_completion(
        self, command: str | None, vfx: VfxConfig, context: dict[str, Any], elapsed_ms: int
    ) -> None:
        if self._bus is None:
            return
        try:
            platform = Platform(context["platform"])
        except ValueError:
            platform = Platform.CUSTOM
        fields: dict[str, Any] = {
            "platform": platform,
            "timestamp": iso_from_ms(self._clock.now_ms()),
            "metadata": EventMetadata(platform=platform, correlation_id=context["correlation_id"]),
            "command": command,
            "command_key": vfx.command_key,
            "filename": vfx.filename,
            "media_source": vfx.media_source,
            "username": context.get("username"),
            "user_id": context.get("user_id"),
            "duration_ms": elapsed_ms,
            "context": {key: value for key, value in context.items() if value is not None},
        }
        await self._bus.publish(
            EventType.VFX_COMMAND_EXECUTED, VfxCommandExecutedEvent(**fields)
        )
        await self._bus.publish(
            EventType.VFX_EFFECT_COMPLETED, VfxEffectCompletedEvent(**fields)
        )

    async def _on_command_received(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        result = await self.execute_command(
            payload.get("command"),
            user_id=str(payload.get("user_id") or ""),
            platform=str(payload.get("platform") or Platform.CUSTOM),
            username=payload.get("username"),
            skip_cooldown=True,
            notification_type=payload.get("notification_type"),
            correlation_id=payload.get("correlation_id"),
        )
        if not result.success:
            logger.warning("vfx_command_failed", command=payload.get("command"), error=result.error)
