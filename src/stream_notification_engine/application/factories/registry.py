from __future__ import annotations

from collections.abc import Callable

from stream_notification_engine.application.factories.base import EventFactory
from stream_notification_engine.application.factories.generic import (
    CustomEventFactory,
    StreamElementsEventFactory,
)
from stream_notification_engine.application.factories.tiktok import TikTokEventFactory
from stream_notification_engine.application.factories.twitch import TwitchEventFactory
from stream_notification_engine.application.factories.youtube import YouTubeEventFactory
from stream_notification_engine.domain.events import Platform
from stream_notification_engine.util.ids import new_correlation_id

FACTORY_CLASSES: dict[Platform, type[EventFactory]] = {
    Platform.TIKTOK: TikTokEventFactory,
    Platform.TWITCH: TwitchEventFactory,
    Platform.YOUTUBE: YouTubeEventFactory,
    Platform.STREAMELEMENTS: StreamElementsEventFactory,
    Platform.CUSTOM: CustomEventFactory,
}


def create_event_factory(
    platform: str,
    now_iso: Callable[[], str] | None = None,
    correlation_id: Callable[[], str] = new_correlation_id,
) -> EventFactory:
    try:
        factory_cls = FACTORY_CLASSES[Platform(platform)]
    except ValueError as exc:
        raise ValueError(f"No event factory for platform: {platform}") from exc
    return factory_cls(now_iso=now_iso, correlation_id=correlation_id)
