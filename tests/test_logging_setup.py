from __future__ import annotations

from datetime import UTC, datetime

from stream_notification_engine.util.logging_setup import (
    EMOJI_EVENT_MAP,
    _apply_emoji_style,
    resolve_log_path,
)


def test_resolve_log_path_appends_stamp_before_suffix() -> None:
    fixed = datetime(2026, 5, 7, 21, 4, 9, tzinfo=UTC)
    assert resolve_log_path("logs/stream.log", now=fixed) == "logs/stream-20260507-210409.log"


def test_resolve_log_path_fills_ts_placeholder() -> None:
    fixed = datetime(2026, 5, 7, 21, 4, 9, tzinfo=UTC)
    assert resolve_log_path("logs/{ts}-engine.jsonl", now=fixed) == "logs/20260507-210409-engine.jsonl"
    assert resolve_log_path("", now=fixed) is None


def test_emoji_processor_rewrites_known_events_only() -> None:
    processor = _apply_emoji_style("emoji")
    known = processor(None, "info", {"event": "platform_ready"})
    assert known["event"] == EMOJI_EVENT_MAP["platform_ready"]
    assert known["event_key"] == "platform_ready"

    unknown = processor(None, "info", {"event": "something_else"})
    assert unknown == {"event": "something_else"}


def test_plain_style_leaves_events_untouched() -> None:
    processor = _apply_emoji_style("plain")
    assert processor(None, "info", {"event": "platform_ready"}) == {"event": "platform_ready"}
