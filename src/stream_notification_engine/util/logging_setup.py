from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import structlog

EMOJI_EVENT_MAP: dict[str, str] = {
    "runtime_start": "🎬 runtime up",
    "runtime_shutdown": "🌙 runtime down",
    "platform_ready": "🔌 platform ready",
    "platform_failed": "💥 platform failed",
    "platform_disabled": "💤 platform disabled",
    "stream_status_changed": "📡 stream status",
    "router_dispatch_failed": "🧨 router handler failed",
    "router_event_rejected": "🙅 event rejected",
    "notification_enqueued": "📬 notification queued",
    "notification_suppressed": "🤐 user suppressed",
    "notification_user_suppressed": "🤐 suppression started",
    "spam_gift_held": "🧺 gift held",
    "display_item_shown": "🖥️ on screen",
    "display_item_failed": "🧯 display failed",
    "display_lingering_chat": "💬 lingering chat",
    "vfx_command_executed": "✨ vfx fired",
    "vfx_command_failed": "🪫 vfx failed",
    "vfx_cooldown_blocked": "⏳ vfx cooldown",
    "goal_updated": "🎯 goal updated",
    "graceful_exit_triggered": "🚪 graceful exit",
    "token_store_saved": "🔐 tokens saved",
    "bus_handler_failed": "📛 bus handler failed",
}


def _apply_emoji_style(style: str):
    style_value = (style or "").lower()

    def processor(_: object, __: str, event_dict: dict) -> dict:
        if style_value != "emoji":
            return event_dict
        event = event_dict.get("event")
        if not isinstance(event, str) or event not in EMOJI_EVENT_MAP:
            return event_dict
        event_dict.setdefault("event_key", event)
        event_dict["event"] = EMOJI_EVENT_MAP[event]
        return event_dict

    return processor


def resolve_log_path(file_path: str | None, now: datetime | None = None) -> str | None:
    if not file_path:
        return None
    stamp = (now or datetime.now(tz=UTC)).strftime("%Y%m%d-%H%M%S")
    if "{ts}" in file_path:
        return file_path.replace("{ts}", stamp)
    path = Path(file_path)
    return str(path.with_name(f"{path.stem}-{stamp}{path.suffix}"))


def configure_logging(
    level: str,
    style: str = "emoji",
    console: bool = True,
    file_path: str | None = None,
) -> None:
    level_name = level.upper()
    numeric_level = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    resolved_path = resolve_log_path(file_path)
    if resolved_path:
        path = Path(resolved_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _apply_emoji_style(style),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
