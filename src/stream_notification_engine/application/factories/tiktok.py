from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stream_notification_engine.application.factories.base import (
    EventFactory,
    Identity,
    canonical_identity,
    clean_text,
    pick,
    positive_int,
    positive_number,
)
from stream_notification_engine.domain.events import (
    EnvelopeEvent,
    GiftEvent,
    PaypiggyEvent,
    Platform,
    ShareEvent,
)
from stream_notification_engine.errors import EventValidationError


class TikTokEventFactory(EventFactory):
    platform = Platform.TIKTOK
    label = "TikTok"

    def extract_identity(self, data: Mapping[str, Any]) -> Identity:
        user = data.get("user")
        if isinstance(user, Mapping):
            user_id = clean_text(pick(user, "userId", "uniqueId", "id"))
            username = clean_text(pick(user, "nickname", "uniqueId", "username"))
            if user_id or username:
                return user_id or None, username or None
        return canonical_identity(data)

    def _message_id(self, data: Mapping[str, Any]) -> str:
        return clean_text(pick(data, "id", "msgId", "msg_id"))

    def create_gift(self, data: Mapping[str, Any]) -> GiftEvent:
        user_id, username = self._identity(data)
        gift_type = clean_text(pick(data, "giftType", "gift_type"))
        if not gift_type:
            raise EventValidationError("giftType", "TikTok gift requires giftType")
        gift_count = positive_int(pick(data, "giftCount", "gift_count"))
        if gift_count is None:
            raise EventValidationError("giftCount", "TikTok gift requires giftCount")
        amount = positive_number(data.get("amount"))
        if amount is None:
            raise EventValidationError("amount", "TikTok gift requires amount")
        currency = clean_text(data.get("currency"))
        if not currency:
            raise EventValidationError("currency", "TikTok gift requires currency")
        unit_amount = pick(data, "unitAmount", "unit_amount")
        if isinstance(unit_amount, bool) or not isinstance(unit_amount, (int, float)):
            raise EventValidationError("unitAmount", "TikTok gift requires unitAmount")
        message_id = self._message_id(data)
        if not message_id:
            raise EventValidationError("id", "TikTok gift requires msgId")

        aggregated_count = positive_int(pick(data, "aggregatedCount", "aggregated_count"))
        is_aggregated = pick(data, "isAggregated", "is_aggregated") is True or (
            aggregated_count is not None
        )
        enhanced = pick(data, "enhancedGiftData", "enhanced_gift_data")
        repeat_count = positive_int(pick(data, "repeatCount", "repeat_count"))

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
            unit_amount=float(unit_amount),
            repeat_count=repeat_count,
            is_aggregated=True if is_aggregated else None,
            aggregated_count=aggregated_count if is_aggregated else None,
            enhanced_gift_data=dict(enhanced) if isinstance(enhanced, Mapping) else None,
            timestamp=self._timestamp(data, "gift", required=True),
            metadata=self._metadata(),
        )

    def create_envelope(self, data: Mapping[str, Any]) -> EnvelopeEvent:
        user_id, username = self._identity(data)
        message_id = self._message_id(data)
        if not message_id:
            raise EventValidationError("id", "Missing TikTok envelope message id")
        amount = positive_number(pick(data, "giftCoins", "amount"))
        if amount is None:
            raise EventValidationError("amount", "Missing TikTok envelope gift amount")
        currency = clean_text(data.get("currency"))
        if not currency:
            raise EventValidationError("currency", "TikTok envelope requires currency")
        return self._build(
            EnvelopeEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            id=message_id,
            amount=amount,
            currency=currency,
            timestamp=self._timestamp(data, "envelope"),
            metadata=self._metadata(),
        )

    def create_share(self, data: Mapping[str, Any]) -> ShareEvent:
        user_id, username = self._require_identity(data)
        return self._build(
            ShareEvent,
            platform=self.platform,
            user_id=user_id,
            username=username,
            timestamp=self._timestamp(data, "share"),
            metadata=self._metadata(interaction_type="share"),
        )

    def create_subscription(self, data: Mapping[str, Any]) -> PaypiggyEvent:
        return self.create_paypiggy(data)

    def create_superfan(self, data: Mapping[str, Any]) -> PaypiggyEvent:
        return self.create_paypiggy(data, tier="superfan")
