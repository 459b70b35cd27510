from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from stream_notification_engine.application.timestamps import (
    TimestampService,
    iso_from_ms,
    parse_timestamp_ms,
)
from stream_notification_engine.domain.events import (
    BaseEvent,
    ChatMessageEvent,
    ChatText,
    ConnectionEvent,
    DisconnectionEvent,
    ErrorEvent,
    ErrorInfo,
    EventMetadata,
    FollowEvent,
    PaypiggyEvent,
    Platform,
    RaidEvent,
    StreamStatusEvent,
    validation_error_from,
)
from stream_notification_engine.errors import EventValidationError
from stream_notification_engine.util.clock import SystemClock
from stream_notification_engine.util.ids import new_correlation_id

EventT = TypeVar("EventT", bound=BaseEvent)

Identity = tuple[str | None, str | None]
IdentityExtractor = Callable[[Mapping[str, Any]], Identity]


def pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def clean_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def positive_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def positive_int(value: Any) -> int | None:
    number = positive_number(value)
    if number is None:
        return None
    return int(number)


def canonical_identity(data: Mapping[str, Any]) -> Identity:
    user_id = clean_text(pick(data, "userId", "user_id"))
    username = clean_text(pick(data, "username", "displayName", "display_name"))
    return user_id or None, username or None


class EventFactory:
    """Shared construction rules for canonical events of one platform."""

    platform: Platform = Platform.CUSTOM
    label: str = "Custom"

    def __init__(
        self,
        now_iso: Callable[[], str] | None = None,
        correlation_id: Callable[[], str] = new_correlation_id,
        identity: IdentityExtractor | None = None,
    ) -> None:
        self._now_iso = now_iso or TimestampService(SystemClock()).now_iso
        self._correlation_id = correlation_id
        self._identity = identity or self.extract_identity

    def extract_identity(self, data: Mapping[str, Any]) -> Identity:
        return canonical_identity(data)

    def _require_identity(self, data: Mapping[str, Any]) -> tuple[str, str]:
        user_id, username = self._identity(data)
        if not user_id:
            raise EventValidationError("userId", f"{self.label} event payload requires userId")
        if not username:
            raise EventValidationError("username", f"{self.label} event payload requires username")
        return user_id, username

    def _metadata(self, **extra: Any) -> EventMetadata:
        return EventMetadata(
            platform=self.platform,
            correlation_id=self._correlation_id(),
            **{key: value for key, value in extra.items() if value is not None},
        )

    def _timestamp(self, data: Mapping[str, Any], kind: str, required: bool = False) -> str:
        raw = data.get("timestamp")
        if raw is None or raw == "":
            if required:
                raise EventValidationError("timestamp", f"{self.label} {kind} requires timestamp")
            return self._now_iso()
        ts_ms = parse_timestamp_ms(raw)
        if isinstance(raw, str) and not _is_numeric(raw) and ts_ms is None:
            raise EventValidationError(
                "timestamp", f"{self.label} {kind} requires timestamp (ISO required)"
            )
        if ts_ms is None:
            raise EventValidationError("timestamp", f"{self.label} {kind} requires timestamp")
        return iso_from_ms(ts_ms)

    def _build(self, model: type[EventT], **fields: Any) -> EventT:
        try:
            return model(**{key: value for key, value in fields.items() if value is not None})
        except PydanticValidationError as exc:
            raise validation_error_from(exc) from exc

    def create_chat_message(self, data: Mapping[str, Any]) -> ChatMessageEvent:
        user_id, username = self._require_identity(data)
        raw_message = data.get("message")
        if isinstance(raw_message, Mapping):
            raw_message = raw_message.get("text")
        text = raw_message.strip() if isinstance(raw_message, str) else ""
        if not text:
            raise EventValidationError("message", f"Missing {self.label} message text")
        return self._build(
            ChatMessageEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            message=ChatText(text=text),
            is_mod=bool(pick(data, "isMod", "is_mod")),
            is_subscriber=bool(pick(data, "isSubscriber", "is_subscriber")),
            is_broadcaster=bool(pick(data, "isBroadcaster", "is_broadcaster")),
            timestamp=self._timestamp(data, "message", required=True),
            metadata=self._metadata(),
        )

    def create_follow(self, data: Mapping[str, Any]) -> FollowEvent:
        user_id, username = self._require_identity(data)
        return self._build(
            FollowEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            timestamp=self._timestamp(data, "follow"),
            metadata=self._metadata(),
        )

    def create_raid(self, data: Mapping[str, Any]) -> RaidEvent:
        user_id, username = self._require_identity(data)
        viewer_count = pick(data, "viewerCount", "viewer_count", "viewers")
        if isinstance(viewer_count, bool) or not isinstance(viewer_count, (int, float)):
            raise EventValidationError(
                "viewerCount", f"{self.label} raid payload requires numeric viewerCount"
            )
        if not math.isfinite(viewer_count) or viewer_count < 0:
            raise EventValidationError(
                "viewerCount", f"{self.label} raid payload requires numeric viewerCount"
            )
        return self._build(
            RaidEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            viewer_count=int(viewer_count),
            timestamp=self._timestamp(data, "raid"),
            metadata=self._metadata(),
        )

    def create_paypiggy(self, data: Mapping[str, Any], **overrides: Any) -> PaypiggyEvent:
        user_id, username = self._require_identity(data)
        months = positive_int(pick(data, "months", "cumulativeMonths", "cumulative_months"))
        tier = clean_text(data.get("tier")) or None
        message = clean_text(data.get("message")) or None
        fields: dict[str, Any] = {
            "platform": self.platform,
            "user_id": user_id,
            "username": username,
            "id": clean_text(pick(data, "id", "msgId")) or None,
            "tier": tier,
            "months": months,
            "message": message,
            "is_renewal": months is not None and months > 1,
            "is_gift": pick(data, "isGift", "is_gift"),
            "membership_level": clean_text(pick(data, "membershipLevel", "membership_level"))
            or None,
            "timestamp": self._timestamp(data, "paypiggy"),
            "metadata": self._metadata(),
        }
        fields.update(overrides)
        return self._build(PaypiggyEvent, **fields)

    def create_stream_status(self, data: Mapping[str, Any], is_live: bool) -> StreamStatusEvent:
        return self._build(
            StreamStatusEvent,
            platform=self.platform,
            is_live=is_live,
            timestamp=self._timestamp(data, "stream status"),
            metadata=self._metadata(),
        )

    def create_connection(self, data: Mapping[str, Any] | None = None) -> ConnectionEvent:
        payload = data or {}
        return self._build(
            ConnectionEvent,
            platform=self.platform,
            connection_id=clean_text(pick(payload, "connectionId", "connection_id")) or None,
            timestamp=self._timestamp(payload, "connection"),
            metadata=self._metadata(),
        )

    def create_disconnection(
        self,
        reason: str | None = None,
        will_reconnect: bool = False,
        data: Mapping[str, Any] | None = None,
    ) -> DisconnectionEvent:
        return self._build(
            DisconnectionEvent,
            platform=self.platform,
            reason=reason,
            will_reconnect=will_reconnect,
            timestamp=self._timestamp(data or {}, "disconnection"),
            metadata=self._metadata(),
        )

    def create_error(
        self,
        error: BaseException | Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
        recoverable: bool = True,
        data: Mapping[str, Any] | None = None,
    ) -> ErrorEvent:
        if isinstance(error, BaseException):
            info = ErrorInfo(message=str(error), name=type(error).__name__)
        else:
            info = ErrorInfo(
                message=error.get("message") if isinstance(error.get("message"), str) else None,
                name=error.get("name") if isinstance(error.get("name"), str) else None,
            )
        return self._build(
            ErrorEvent,
            platform=self.platform,
            error=info,
            context=dict(context or {}),
            recoverable=recoverable,
            timestamp=self._timestamp(data or {}, "error"),
            metadata=self._metadata(),
        )


def _is_numeric(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True
