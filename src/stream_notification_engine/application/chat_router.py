from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

import structlog

from stream_notification_engine.application.cooldowns import CommandCooldownService
from stream_notification_engine.application.display_queue import DisplayQueue
from stream_notification_engine.application.graceful_exit import GracefulExitService
from stream_notification_engine.application.messages import (
    build_display_message,
    build_tts_message,
)
from stream_notification_engine.application.timestamps import parse_timestamp_ms
from stream_notification_engine.application.user_tracking import UserTrackingService
from stream_notification_engine.application.vfx import VFXCommandService
from stream_notification_engine.config import ConfigService
from stream_notification_engine.domain.display import DisplayItem, DisplayKind, VfxConfig
from stream_notification_engine.domain.events import ChatMessageEvent, EventType, Platform

logger = structlog.get_logger(__name__)

_ZERO_WIDTH_RE = re.compile(
    "[" + "".join(chr(code) for code in (0x200B, 0x200C, 0x200D, 0x2060, 0xFEFF)) + "]"
)
_HTML_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_chat_text(text: str, max_length: int) -> str:
    cleaned = _ZERO_WIDTH_RE.sub("", text)
    cleaned = _HTML_TAG_RE.sub("", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if max_length > 0 and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip()
    return cleaned


def _chat_fields(event: ChatMessageEvent | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(event, ChatMessageEvent):
        return {
            "user_id": event.user_id,
            "username": event.username,
            "message": event.message.text,
            "timestamp": event.timestamp,
            "is_mod": event.is_mod,
            "is_subscriber": event.is_subscriber,
            "is_broadcaster": event.is_broadcaster,
        }
    message = event.get("message")
    if isinstance(message, Mapping):
        message = message.get("text")
    return {
        "user_id": event.get("user_id") or event.get("userId"),
        "username": event.get("username"),
        "message": message if isinstance(message, str) else "",
        "timestamp": event.get("timestamp"),
        "is_mod": bool(event.get("is_mod") or event.get("isMod")),
        "is_subscriber": bool(event.get("is_subscriber") or event.get("isSubscriber")),
        "is_broadcaster": bool(event.get("is_broadcaster") or event.get("isBroadcaster")),
    }


class ChatNotificationRouter:
    def __init__(
        self,
        config: ConfigService,
        display_queue: DisplayQueue,
        vfx: VFXCommandService | None = None,
        cooldowns: CommandCooldownService | None = None,
        user_tracking: UserTrackingService | None = None,
        graceful_exit: GracefulExitService | None = None,
        connection_time: Callable[[str], int | None] | None = None,
    ) -> None:
        self._config = config
        self._queue = display_queue
        self._vfx = vfx
        self._cooldowns = cooldowns
        self._users = user_tracking or UserTrackingService()
        self._graceful_exit = graceful_exit
        self._connection_time = connection_time
        self._stats = {"received": 0, "queued": 0, "filtered": 0, "commands": 0, "greetings": 0}

    async def handle_chat_message(
        self, platform: str, event: ChatMessageEvent | Mapping[str, Any]
    ) -> dict[str, Any]:
        self._stats["received"] += 1
        fields = _chat_fields(event)
        raw_text = fields["message"]
        if not raw_text or not raw_text.strip():
            return self._skip("empty_message", platform)
        if not self._config.are_notifications_enabled("messages_enabled", platform):
            return self._skip("messages_disabled", platform)
        if self._is_old_message(platform, fields.get("timestamp")):
            return self._skip("old_message", platform)

        if self._graceful_exit is not None and self._graceful_exit.is_enabled:
            self._graceful_exit.increment_message_count()

        text = sanitize_chat_text(raw_text, self._config.settings.general.max_message_length)
        if not text:
            return self._skip("empty_after_sanitize", platform)
        username = fields.get("username") or self._config.settings.general.fallback_username
        user_id = fields.get("user_id")
        base = {"username": username, "user_id": user_id, "platform": platform}

        self._queue.add_item(
            DisplayItem(
                type=EventType.CHAT_MESSAGE,
                platform=Platform(platform),
                data={
                    **base,
                    "message": text,
                    "is_mod": fields["is_mod"],
                    "is_subscriber": fields["is_subscriber"],
                    "is_broadcaster": fields["is_broadcaster"],
                },
            )
        )
        self._stats["queued"] += 1
        result: dict[str, Any] = {"success": True, "message": text, "command": None, "greeting": False}

        vfx = self._detect_command(text)
        if vfx is not None and self._command_allowed(user_id, vfx):
            data = {**base, "command": vfx.command, "message": text}
            data["display_message"] = build_display_message(DisplayKind.COMMAND, data)
            data["tts_message"] = build_tts_message(DisplayKind.COMMAND, data)
            self._queue.add_item(
                DisplayItem(
                    type=DisplayKind.COMMAND,
                    platform=Platform(platform),
                    data=data,
                    vfx_config=vfx,
                )
            )
            self._stats["commands"] += 1
            result["command"] = vfx.command

        if self._config.are_notifications_enabled("greetings_enabled", platform) and (
            self._users.is_first_message(user_id, platform)
        ):
            data = dict(base)
            data["display_message"] = build_display_message(DisplayKind.GREETING, data)
            data["tts_message"] = build_tts_message(DisplayKind.GREETING, data)
            self._queue.add_item(
                DisplayItem(type=DisplayKind.GREETING, platform=Platform(platform), data=data)
            )
            self._stats["greetings"] += 1
            result["greeting"] = True
        return result

    def _detect_command(self, text: str) -> VfxConfig | None:
        if self._vfx is None or not self._config.settings.general.commands_enabled:
            return None
        try:
            return self._vfx.parser.parse(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("chat_command_parse_failed", error=str(exc))
            return None

    def _command_allowed(self, user_id: str | None, vfx: VfxConfig) -> bool:
        if self._cooldowns is None:
            return True
        if not user_id or not self._cooldowns.check_user_cooldown(user_id):
            return False
        global_ms = self._config.settings.general.global_cmd_cooldown_ms
        if not self._cooldowns.check_global_cooldown(vfx.command_key, global_ms):
            return False
        self._cooldowns.update_user_cooldown(user_id)
        self._cooldowns.update_global_cooldown(vfx.command_key)
        return True

    def _is_old_message(self, platform: str, timestamp: Any) -> bool:
        if not self._config.settings.general.filter_old_messages or self._connection_time is None:
            return False
        connected_at = self._connection_time(platform)
        sent_at = parse_timestamp_ms(timestamp)
        if connected_at is None or sent_at is None:
            return False
        return sent_at < connected_at

    def _skip(self, reason: str, platform: str) -> dict[str, Any]:
        self._stats["filtered"] += 1
        logger.debug("chat_message_skipped", reason=reason, platform=platform)
        return {"success": False, "reason": reason}

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
