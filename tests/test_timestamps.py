from __future__ import annotations

from stream_notification_engine.application.timestamps import (
    TimestampService,
    iso_from_ms,
    parse_timestamp_ms,
)

from conftest import FakeClock


def test_parse_timestamp_ms_normalizes_units() -> None:
    assert parse_timestamp_ms(1_700_000_000) == 1_700_000_000_000
    assert parse_timestamp_ms(1_700_000_000_123) == 1_700_000_000_123
    assert parse_timestamp_ms(1_700_000_000_123_456) == 1_700_000_000_123
    assert parse_timestamp_ms("1700000000") == 1_700_000_000_000
    assert parse_timestamp_ms("2023-11-14T22:13:20Z") == 1_700_000_000_000


def test_parse_timestamp_ms_rejects_garbage() -> None:
    assert parse_timestamp_ms(None) is None
    assert parse_timestamp_ms(True) is None
    assert parse_timestamp_ms("") is None
    assert parse_timestamp_ms("yesterday") is None
    assert parse_timestamp_ms(-5) is None
    assert parse_timestamp_ms(float("nan")) is None


def test_iso_from_ms_uses_utc_with_millis() -> None:
    assert iso_from_ms(1_700_000_000_123) == "2023-11-14T22:13:20.123Z"


def test_now_iso_never_goes_backwards() -> None:
    clock = FakeClock(start_ms=1_700_000_000_000)
    service = TimestampService(clock)
    first = service.now_iso()
    clock._now -= 5_000
    assert service.now_iso() == first


def test_extract_timestamp_per_platform() -> None:
    service = TimestampService(FakeClock())
    assert service.extract_timestamp("tiktok", {"common": {"createTime": "1700000000000"}}) == (
        "2023-11-14T22:13:20.000Z"
    )
    assert service.extract_timestamp(
        "youtube", {"item": {"timestamp_usec": "1700000000000000"}}
    ) == ("2023-11-14T22:13:20.000Z")
    assert service.extract_timestamp("twitch", {"followed_at": "2023-11-14T22:13:20Z"}) == (
        "2023-11-14T22:13:20.000Z"
    )


def test_extract_timestamp_falls_back_to_clock() -> None:
    clock = FakeClock(start_ms=1_700_000_000_000)
    service = TimestampService(clock)
    assert service.extract_timestamp("custom", {"nothing": 1}) == "2023-11-14T22:13:20.000Z"
    assert service.extract_timestamp("tiktok", None) == "2023-11-14T22:13:20.000Z"
    assert service.get_stats() == {"extractions": 2, "fallbacks": 2}
