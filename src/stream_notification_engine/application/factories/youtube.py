from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stream_notification_engine.application.factories.base import (
    EventFactory,
    Identity,
    clean_text,
    pick,
    positive_int,
    positive_number,
)
from stream_notification_engine.domain.events import GiftEvent, Platform
from stream_notification_engine.errors import EventValidationError


class YouTubeEventFactory(EventFactory):
    platform = Platform.YOUTUBE
    label = "YouTube"

    def extract_identity(self, data: Mapping[str, Any]) -> Identity:
        author = data.get("author")
        if isinstance(author, Mapping):
            user_id = clean_text(pick(author, "channelId", "id"))
            username = clean_text(pick(author, "name", "displayName"))
            return user_id or None, username or None
        return super().extract_identity(data)

    def create_gift(self, data: Mapping[str, Any]) -> GiftEvent:
        user_id, username = self._require_identity(data)
        gift_type = clean_text(pick(data, "giftType", "gift_type"))
        if not gift_type:
            raise EventValidationError("giftType", "YouTube gift payload requires giftType")
        gift_count = positive_int(pick(data, "giftCount", "gift_count"))
        if gift_count is None:
            raise EventValidationError("giftCount", "YouTube gift payload requires giftCount")
        amount = positive_number(data.get("amount"))
        if amount is None:
            raise EventValidationError("amount", "YouTube gift payload requires amount")
        currency = clean_text(data.get("currency"))
        if not currency:
            raise EventValidationError("currency", "YouTube gift payload requires currency")
        message_id = clean_text(data.get("id"))
        if not message_id:
            raise EventValidationError("id", "YouTube gift payload requires id")
        return self._build(
            GiftEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            id=message_id,
            gift_type=gift_type,
            gift_count=gift_count,
            amount=amount,
            currency=currency,
            message=clean_text(data.get("message")) or None,
            timestamp=self._timestamp(data, "gift payload", required=True),
            metadata=self._metadata(video_id=data.get("videoId")),
        )
