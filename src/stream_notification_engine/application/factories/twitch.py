from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stream_notification_engine.application.factories.base import (
    EventFactory,
    clean_text,
    pick,
    positive_int,
    positive_number,
)
from stream_notification_engine.domain.events import (
    GiftEvent,
    PaypiggyEvent,
    Platform,
    StreamStatusEvent,
)
from stream_notification_engine.errors import EventValidationError


class TwitchEventFactory(EventFactory):
    platform = Platform.TWITCH
    label = "Twitch"

    def create_gift_paypiggy(self, data: Mapping[str, Any]) -> PaypiggyEvent:
        gift_count = positive_int(pick(data, "giftCount", "gift_count", "total"))
        if gift_count is None:
            raise EventValidationError("giftCount", "Twitch giftpaypiggy payload requires giftCount")
        return self.create_paypiggy(data, is_gift=True)

    def create_cheer(self, data: Mapping[str, Any]) -> GiftEvent:
        user_id, username = self._require_identity(data)
        bits = positive_number(data.get("bits"))
        if bits is None:
            raise EventValidationError("amount", "Twitch cheer payload requires numeric bits")
        message_id = clean_text(pick(data, "id", "messageId", "message_id"))
        if not message_id:
            raise EventValidationError("id", "Twitch cheer payload requires id")
        repeat_count = positive_int(pick(data, "repeatCount", "repeat_count")) or 1
        cheermote = data.get("cheermoteInfo")
        return self._build(
            GiftEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            id=message_id,
            gift_type="bits",
            gift_count=repeat_count,
            repeat_count=repeat_count,
            amount=bits,
            unit_amount=bits / repeat_count,
            currency="bits",
            message=clean_text(data.get("message")) or None,
            timestamp=self._timestamp(data, "cheer"),
            metadata=self._metadata(
                cheermote_info=dict(cheermote) if isinstance(cheermote, Mapping) else None
            ),
        )

    def create_stream_online(self, data: Mapping[str, Any]) -> StreamStatusEvent:
        return self.create_stream_status(data, is_live=True)

    def create_stream_offline(self, data: Mapping[str, Any]) -> StreamStatusEvent:
        return self.create_stream_status(data, is_live=False)
