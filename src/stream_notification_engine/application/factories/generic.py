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
from stream_notification_engine.domain.events import GiftEvent, Platform
from stream_notification_engine.errors import EventValidationError


class GenericEventFactory(EventFactory):
    """Factory for platforms whose payloads already use canonical field names."""

    default_gift_type = "gift"

    def create_gift(self, data: Mapping[str, Any]) -> GiftEvent:
        user_id, username = self._require_identity(data)
        gift_type = clean_text(pick(data, "giftType", "gift_type")) or self.default_gift_type
        gift_count = positive_int(pick(data, "giftCount", "gift_count", "count"))
        if gift_count is None:
            raise EventValidationError("giftCount", f"{self.label} gift requires giftCount")
        amount = positive_number(data.get("amount"))
        if amount is None:
            raise EventValidationError("amount", f"{self.label} gift requires amount")
        currency = clean_text(data.get("currency"))
        if not currency:
            raise EventValidationError("currency", f"{self.label} gift requires currency")
        message_id = clean_text(pick(data, "id", "_id", "msgId"))
        if not message_id:
            raise EventValidationError("id", f"{self.label} gift requires id")
        aggregated_count = positive_int(pick(data, "aggregatedCount", "aggregated_count"))
        is_aggregated = pick(data, "isAggregated", "is_aggregated") is True or (
            aggregated_count is not None
        )
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
            repeat_count=positive_int(pick(data, "repeatCount", "repeat_count")),
            unit_amount=positive_number(pick(data, "unitAmount", "unit_amount")),
            is_aggregated=True if is_aggregated else None,
            aggregated_count=aggregated_count if is_aggregated else None,
            message=clean_text(data.get("message")) or None,
            timestamp=self._timestamp(data, "gift"),
            metadata=self._metadata(),
        )


class StreamElementsEventFactory(GenericEventFactory):
    platform = Platform.STREAMELEMENTS
    label = "StreamElements"
    default_gift_type = "tip"

    def create_tip(self, data: Mapping[str, Any]) -> GiftEvent:
        payload = dict(data)
        payload.setdefault("giftCount", 1)
        return self.create_gift(payload)


class CustomEventFactory(GenericEventFactory):
    platform = Platform.CUSTOM
    label = "Custom"
