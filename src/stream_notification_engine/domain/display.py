from __future__ import annotations

from enum import IntEnum, StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from stream_notification_engine.domain.events import EventType, Platform


class Priority(IntEnum):
    CHAT = 1
    COMMAND = 2
    GREETING = 3
    FOLLOW = 4
    SHARE = 5
    RAID = 6
    ENVELOPE = 7
    GIFT = 8
    MEMBER = 9
    PAYPIGGY = 9


class DisplayKind(StrEnum):
    GREETING = "greeting"
    COMMAND = "command"


CHAT_KINDS: frozenset[str] = frozenset({EventType.CHAT_MESSAGE.value, "chat"})

PRIORITY_BY_TYPE: dict[str, Priority] = {
    EventType.CHAT_MESSAGE: Priority.CHAT,
    EventType.FOLLOW: Priority.FOLLOW,
    EventType.SHARE: Priority.SHARE,
    EventType.RAID: Priority.RAID,
    EventType.ENVELOPE: Priority.ENVELOPE,
    EventType.GIFT: Priority.GIFT,
    EventType.PAYPIGGY: Priority.MEMBER,
    DisplayKind.GREETING: Priority.GREETING,
    DisplayKind.COMMAND: Priority.COMMAND,
}


def priority_for(item_type: str) -> Priority:
    return PRIORITY_BY_TYPE.get(item_type, Priority.CHAT)


def is_chat_kind(item_type: str) -> bool:
    return item_type in CHAT_KINDS


class VfxConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    command_key: str = Field(min_length=1)
    command: str | None = None
    filename: str | None = None
    media_source: str | None = None
    vfx_file_path: str | None = None
    duration_ms: int = 5000
    trigger_word: str | None = None

    def is_complete(self) -> bool:
        return bool(self.command and self.filename and self.media_source)


class DisplayItem(BaseModel):
    type: str = Field(min_length=1)
    platform: Platform
    data: dict[str, Any]
    priority: Priority | None = None
    vfx_config: VfxConfig | None = None
    duration_ms: int = 0
    enqueued_at: int = 0

    @property
    def is_chat(self) -> bool:
        return is_chat_kind(self.type)

    @property
    def username(self) -> str:
        value = self.data.get("username")
        return value if isinstance(value, str) else ""


class TTSStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    delay_ms: int = 0
    kind: Literal["primary", "message"] = "primary"


class DisplayContent(BaseModel):
    type: str
    content: str
    username: str
    platform: Platform
    is_lingering: bool | None = None
    notification_details: dict[str, Any] | None = None


class CooldownInfo(BaseModel):
    allowed: bool
    type: Literal["user", "global"] | None = None
    remaining_ms: int = 0
    cooldown_ms: int = 0


class NotificationResult(BaseModel):
    success: bool
    error: str | None = None
    notification_type: str | None = None
    platform: str | None = None
    priority: Priority | None = None
    notification_data: dict[str, Any] | None = None
    vfx_config: VfxConfig | None = None
    disabled: bool = False
    suppressed: bool = False
    reason: str | None = None
    details: str | None = None


class CommandResult(BaseModel):
    success: bool
    error: str | None = None
    command: str | None = None
    command_key: str | None = None
    vfx_config: VfxConfig | None = None
    cooldown_info: CooldownInfo | None = None
    duration_ms: float | None = None
    result: Any = None
