from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from stream_notification_engine.errors import EventValidationError


class EventType(StrEnum):
    CHAT_MESSAGE = "platform:chat-message"
    GIFT = "platform:gift"
    FOLLOW = "platform:follow"
    SHARE = "platform:share"
    RAID = "platform:raid"
    ENVELOPE = "platform:envelope"
    PAYPIGGY = "platform:paypiggy"
    STREAM_STATUS = "platform:stream-status"
    CONNECTION = "platform:connection"
    DISCONNECTION = "platform:disconnection"
    ERROR = "platform:error"
    VFX_COMMAND_EXECUTED = "platform:vfx-command-executed"
    VFX_EFFECT_COMPLETED = "platform:vfx-effect-completed"


class Platform(StrEnum):
    TIKTOK = "tiktok"
    TWITCH = "twitch"
    YOUTUBE = "youtube"
    STREAMELEMENTS = "streamelements"
    CUSTOM = "custom"


# Legacy names are only ever looked up to be rejected.
LEGACY_ALIASES: frozenset[str] = frozenset(
    {"subscription", "subscribe", "membership", "superfan", "supporter", "superchat"}
)

MONETIZATION_TYPES: frozenset[EventType] = frozenset(
    {EventType.PAYPIGGY, EventType.GIFT, EventType.ENVELOPE}
)
ATTENTION_TYPES: frozenset[EventType] = frozenset(
    {EventType.FOLLOW, EventType.SHARE, EventType.RAID}
)
NOTIFICATION_TYPES: frozenset[EventType] = MONETIZATION_TYPES | ATTENTION_TYPES
RUNTIME_TYPES: frozenset[EventType] = frozenset(
    {
        EventType.STREAM_STATUS,
        EventType.CONNECTION,
        EventType.DISCONNECTION,
        EventType.ERROR,
    }
)

# Config flag consulted before a notification kind is surfaced.
NOTIFICATION_SETTING_KEYS: dict[EventType, str] = {
    EventType.FOLLOW: "follows_enabled",
    EventType.GIFT: "gifts_enabled",
    EventType.ENVELOPE: "gifts_enabled",
    EventType.PAYPIGGY: "paypiggies_enabled",
    EventType.RAID: "raids_enabled",
    EventType.SHARE: "shares_enabled",
    EventType.CHAT_MESSAGE: "messages_enabled",
}


def is_canonical_type(value: str) -> bool:
    return value in EventType._value2member_map_


class EventMetadata(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    platform: Platform
    correlation_id: str = Field(min_length=1)


class BaseEvent(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    type: EventType
    platform: Platform
    timestamp: str = Field(min_length=1)
    metadata: EventMetadata

    @property
    def correlation_id(self) -> str:
        return self.metadata.correlation_id

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UserEvent(BaseEvent):
    user_id: str | None = None
    username: str | None = None


class ChatText(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str


class ChatMessageEvent(UserEvent):
    type: Literal[EventType.CHAT_MESSAGE] = EventType.CHAT_MESSAGE
    user_id: str = Field(min_length=1)  # type: ignore[assignment]
    username: str = Field(min_length=1)  # type: ignore[assignment]
    message: ChatText
    is_mod: bool = False
    is_subscriber: bool = False
    is_broadcaster: bool = False


class GiftEvent(UserEvent):
    type: Literal[EventType.GIFT] = EventType.GIFT
    id: str = Field(min_length=1)
    gift_type: str = Field(min_length=1)
    gift_count: int = Field(gt=0)
    amount: float = Field(gt=0, allow_inf_nan=False)
    currency: str = Field(min_length=1)
    repeat_count: int | None = None
    unit_amount: float | None = Field(default=None, allow_inf_nan=False)
    is_aggregated: bool | None = None
    aggregated_count: int | None = None
    enhanced_gift_data: dict[str, Any] | None = None
    message: str | None = None


class EnvelopeEvent(GiftEvent):
    type: Literal[EventType.ENVELOPE] = EventType.ENVELOPE  # type: ignore[assignment]
    gift_type: Literal["Treasure Chest"] = "Treasure Chest"  # type: ignore[assignment]
    gift_count: Literal[1] = 1  # type: ignore[assignment]
    repeat_count: Literal[1] = 1  # type: ignore[assignment]


class FollowEvent(UserEvent):
    type: Literal[EventType.FOLLOW] = EventType.FOLLOW


class ShareEvent(UserEvent):
    type: Literal[EventType.SHARE] = EventType.SHARE


class RaidEvent(UserEvent):
    type: Literal[EventType.RAID] = EventType.RAID
    viewer_count: int = Field(ge=0)


class PaypiggyEvent(UserEvent):
    type: Literal[EventType.PAYPIGGY] = EventType.PAYPIGGY
    id: str | None = None
    tier: str | None = None
    months: int | None = Field(default=None, gt=0)
    message: str | None = None
    is_renewal: bool = False
    is_gift: bool | None = None
    membership_level: str | None = None


class StreamStatusEvent(BaseEvent):
    type: Literal[EventType.STREAM_STATUS] = EventType.STREAM_STATUS
    is_live: bool


class ConnectionEvent(BaseEvent):
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    connection_id: str | None = None


class DisconnectionEvent(BaseEvent):
    type: Literal[EventType.DISCONNECTION] = EventType.DISCONNECTION
    reason: str | None = None
    will_reconnect: bool = False


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str | None = None
    name: str | None = None


class ErrorEvent(BaseEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR
    error: ErrorInfo
    context: dict[str, Any] = Field(default_factory=dict)
    recoverable: bool = True


class VfxEvent(BaseEvent):
    command: str | None = None
    command_key: str
    filename: str | None = None
    media_source: str | None = None
    username: str | None = None
    user_id: str | None = None
    duration_ms: float | None = None
    success: bool = True
    context: dict[str, Any] = Field(default_factory=dict)


class VfxCommandExecutedEvent(VfxEvent):
    type: Literal[EventType.VFX_COMMAND_EXECUTED] = EventType.VFX_COMMAND_EXECUTED


class VfxEffectCompletedEvent(VfxEvent):
    type: Literal[EventType.VFX_EFFECT_COMPLETED] = EventType.VFX_EFFECT_COMPLETED


PlatformEvent = Annotated[
    ChatMessageEvent
    | GiftEvent
    | EnvelopeEvent
    | FollowEvent
    | ShareEvent
    | RaidEvent
    | PaypiggyEvent
    | StreamStatusEvent
    | ConnectionEvent
    | DisconnectionEvent
    | ErrorEvent
    | VfxCommandExecutedEvent
    | VfxEffectCompletedEvent,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(PlatformEvent)


def parse_platform_event(payload: Mapping[str, Any]) -> BaseEvent:
    raw_type = payload.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise EventValidationError("type", "Event payload requires type")
    if raw_type in LEGACY_ALIASES:
        raise EventValidationError("type", f"Legacy event type rejected: {raw_type}")
    if not is_canonical_type(raw_type):
        raise EventValidationError("type", f"Unknown event type: {raw_type}")
    try:
        return _EVENT_ADAPTER.validate_python(dict(payload))
    except PydanticValidationError as exc:
        raise validation_error_from(exc) from exc


def validation_error_from(exc: PydanticValidationError) -> EventValidationError:
    errors = exc.errors()
    if not errors:
        return EventValidationError("unknown", str(exc))
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if not str(part).startswith("platform:")]
    field = ".".join(loc) or "unknown"
    return EventValidationError(field, f"Invalid {field}: {first.get('msg', 'invalid value')}")
