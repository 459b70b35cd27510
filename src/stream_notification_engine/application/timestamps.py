from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from stream_notification_engine.ports.clock import ClockPort

logger = structlog.get_logger(__name__)

_SECONDS_THRESHOLD = 10_000_000_000
_MICROSECOND_THRESHOLD = 10_000_000_000_000


def iso_from_ms(ts_ms: int | float) -> str:
    moment = datetime.fromtimestamp(ts_ms / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp_ms(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=UTC)
            number = moment.timestamp() * 1000
            return int(number) if number > 0 else None
    else:
        return None
    if number != number or number <= 0:
        return None
    if number < _SECONDS_THRESHOLD:
        number *= 1000
    elif number > _MICROSECOND_THRESHOLD:
        number /= 1000
    return int(number)


class TimestampService:
    """Issues ISO-8601 UTC timestamps and normalizes platform payload times."""

    def __init__(self, clock: ClockPort) -> None:
        self._clock = clock
        self._last_ms = 0
        self._strategies: dict[str, Callable[[Mapping[str, Any]], int | None]] = {
            "tiktok": self._tiktok_ms,
            "youtube": self._youtube_ms,
            "twitch": self._twitch_ms,
        }
        self._stats = {"extractions": 0, "fallbacks": 0}

    def now_iso(self) -> str:
        now = self._clock.now_ms()
        # Never hand out a time earlier than one already issued.
        self._last_ms = max(self._last_ms, now)
        return iso_from_ms(self._last_ms)

    def extract_timestamp(self, platform: str, payload: Mapping[str, Any] | None) -> str:
        resolved = self.resolve_timestamp(platform, payload)
        if resolved is not None:
            return resolved
        self._stats["fallbacks"] += 1
        return self.now_iso()

    def resolve_timestamp(self, platform: str, payload: Mapping[str, Any] | None) -> str | None:
        self._stats["extractions"] += 1
        if not isinstance(payload, Mapping):
            return None
        strategy = self._strategies.get(platform, self._generic_ms)
        try:
            ts_ms = strategy(payload)
        except (TypeError, ValueError) as exc:
            logger.debug("timestamp_extract_failed", platform=platform, error=str(exc))
            return None
        if ts_ms is None:
            return None
        return iso_from_ms(ts_ms)

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    @staticmethod
    def _first(payload: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
        for key in keys:
            ts_ms = parse_timestamp_ms(payload.get(key))
            if ts_ms is not None:
                return ts_ms
        return None

    def _tiktok_ms(self, payload: Mapping[str, Any]) -> int | None:
        keys = ("createTime", "create_time", "timestamp", "clientSendTime")
        found = self._first(payload, keys)
        if found is not None:
            return found
        common = payload.get("common")
        if isinstance(common, Mapping):
            return self._first(common, keys)
        return None

    def _youtube_ms(self, payload: Mapping[str, Any]) -> int | None:
        item = payload.get("item")
        source = item if isinstance(item, Mapping) else payload
        raw_usec = source.get("timestamp_usec")
        if raw_usec is not None:
            usec = int(raw_usec)
            if usec <= 0:
                return None
            return usec // 1000
        return parse_timestamp_ms(source.get("timestamp"))

    def _twitch_ms(self, payload: Mapping[str, Any]) -> int | None:
        return self._first(payload, ("followed_at", "started_at", "timestamp"))

    def _generic_ms(self, payload: Mapping[str, Any]) -> int | None:
        return self._first(payload, ("timestamp", "createdAt", "created_at", "ts"))
