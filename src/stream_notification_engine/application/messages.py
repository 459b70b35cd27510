from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from stream_notification_engine.config import TTSSettings
from stream_notification_engine.domain.display import DisplayKind, TTSStage
from stream_notification_engine.domain.events import EventType, Platform

MAX_DISPLAY_USERNAME = 40
MAX_TTS_USERNAME = 50

_EMOJI_RANGES = ((0x1F000, 0x1FAFF), (0x2000, 0x2600), (0x2700, 0x3300), (0xFE0F, 0xFE0F))
_EMOJI_RE = re.compile("[" + "".join(f"{chr(lo)}-{chr(hi)}" for lo, hi in _EMOJI_RANGES) + "]")
_DIGITS_RE = re.compile(r"\d+")
_WORD_SPLIT_RE = re.compile(r"\s+")

MESSAGE_STAGE_TYPES: frozenset[str] = frozenset(
    {EventType.CHAT_MESSAGE, EventType.GIFT, EventType.PAYPIGGY}
)


def display_username(username: Any, max_length: int = MAX_DISPLAY_USERNAME) -> str:
    name = username if isinstance(username, str) else ""
    if len(name) <= max_length:
        return name
    return name[: max_length - 3] + "..."


def tts_username(username: Any, max_length: int | None = None) -> str:
    if not isinstance(username, str) or not username.strip():
        return ""
    cleaned = _EMOJI_RE.sub("", username)
    cleaned = _DIGITS_RE.sub(lambda match: match.group(0)[0], cleaned).strip()
    limit = max_length or MAX_TTS_USERNAME
    return cleaned[:limit] or username.strip()[:limit]


def _number_text(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _plural(count: float, noun: str) -> str:
    return f"{_number_text(count)} {noun}" if count == 1 else f"{_number_text(count)} {noun}s"


def _paypiggy_copy(data: Mapping[str, Any]) -> dict[str, str]:
    if data.get("tier") == "superfan":
        return {"action": "became a SuperFan", "resub": "renewed SuperFan"}
    if data.get("platform") == Platform.YOUTUBE:
        return {"action": "just became a member", "resub": "renewed membership"}
    return {"action": "just subscribed", "resub": "renewed subscription"}


def _tier_suffix(data: Mapping[str, Any]) -> str:
    level = data.get("membership_level")
    if isinstance(level, str) and level:
        return f" ({level})"
    tier = data.get("tier")
    if tier in ("2000", "3000"):
        return f" (Tier {tier[0]})"
    return ""


def build_display_message(item_type: str, data: Mapping[str, Any]) -> str:
    user = display_username(data.get("username"))
    match item_type:
        case EventType.FOLLOW:
            return f"{user} just followed!"
        case EventType.SHARE:
            return f"{user} shared the stream"
        case EventType.RAID:
            return f"Incoming raid from {user} with {data.get('viewer_count', 0)} viewers!"
        case EventType.ENVELOPE:
            return f"{user} sent a treasure chest!"
        case EventType.PAYPIGGY:
            copy = _paypiggy_copy(data)
            months = data.get("months")
            if data.get("is_renewal") and isinstance(months, int):
                return f"{user} {copy['resub']} for {months} months!"
            return f"{user} {copy['action']}!{_tier_suffix(data)}"
        case EventType.GIFT:
            return _gift_display(user, data)
        case DisplayKind.GREETING:
            return f"Welcome, {user}! 👋"
        case DisplayKind.COMMAND:
            return f"{user} used command {data.get('command', '')}".rstrip()
        case EventType.CHAT_MESSAGE:
            return f"{user}: {data.get('message', '')}"
    message = data.get("message")
    return message if isinstance(message, str) else ""


def _gift_display(user: str, data: Mapping[str, Any]) -> str:
    gift_type = str(data.get("gift_type") or "")
    count = int(data.get("gift_count") or 1)
    amount = float(data.get("amount") or 0)
    currency = str(data.get("currency") or "").strip()
    message = data.get("message")
    suffix = f": {message}" if isinstance(message, str) and message.strip() else ""
    if currency.lower() == "bits":
        return f"{user} sent {_plural(amount, 'bit')}{suffix}"
    if currency and currency.lower() != "coins":
        return f"{user} sent a {amount:.2f} {currency} {gift_type}{suffix}"
    count_text = f"{count}x " if count > 1 else ""
    coin_text = f" ({_plural(amount, 'coin')})" if amount > 0 else ""
    return f"{user} sent {count_text}{gift_type}{coin_text}"


def build_tts_message(item_type: str, data: Mapping[str, Any]) -> str:
    user = tts_username(data.get("username"))
    match item_type:
        case EventType.FOLLOW:
            return f"{user} just followed"
        case EventType.SHARE:
            return f"{user} shared the stream"
        case EventType.RAID:
            viewers = int(data.get("viewer_count") or 0)
            return f"Incoming raid from {user} with {_plural(viewers, 'viewer')}"
        case EventType.ENVELOPE:
            return f"{tts_username(data.get('username'), 12)} sent a treasure chest"
        case EventType.PAYPIGGY:
            copy = _paypiggy_copy(data)
            months = data.get("months")
            if data.get("is_renewal") and isinstance(months, int):
                return f"{user} {copy['resub']} for {_plural(months, 'month')}"
            return f"{user} {copy['action']}"
        case EventType.GIFT:
            return _gift_tts(user, data)
        case DisplayKind.GREETING:
            return f"Hi {user}"
        case DisplayKind.COMMAND:
            command = str(data.get("command") or "").lstrip("!")
            return f"{user} used command {command}".rstrip()
    return ""


def _gift_tts(user: str, data: Mapping[str, Any]) -> str:
    gift_type = str(data.get("gift_type") or "")
    count = int(data.get("gift_count") or 1)
    amount = float(data.get("amount") or 0)
    currency = str(data.get("currency") or "").strip()
    if currency.lower() == "bits":
        return f"{user} sent {_plural(amount, 'bit')}"
    if currency and currency.lower() != "coins":
        return f"{user} sent a {_number_text(amount)} {currency} {gift_type}"
    count_text = f"{count} " if count > 1 else "a "
    name = f"{gift_type}s" if count > 1 else gift_type
    if amount > 0:
        return f"{user} sent {count_text}{name} for {_plural(amount, 'coin')}"
    return f"{user} sent {count_text}{name}"


def build_tts_stages(
    item_type: str,
    data: Mapping[str, Any],
    settings: TTSSettings | None = None,
) -> list[TTSStage]:
    """Spoken stages for one display item, in playback order."""
    tts = settings or TTSSettings()
    stages: list[TTSStage] = []
    primary = data.get("tts_message")
    if isinstance(primary, str) and primary.strip():
        stages.append(TTSStage(text=primary.strip(), delay_ms=0, kind="primary"))
    message = data.get("message")
    if item_type in MESSAGE_STAGE_TYPES and isinstance(message, str) and message.strip():
        delay = 0 if item_type == EventType.CHAT_MESSAGE else tts.message_stage_delay_ms
        speaker = tts_username(data.get("username")) or "Someone"
        stages.append(
            TTSStage(text=f"{speaker} says {message.strip()}", delay_ms=delay, kind="message")
        )
    return stages


def estimate_speech_ms(text: str, settings: TTSSettings | None = None) -> int:
    tts = settings or TTSSettings()
    words = [word for word in _WORD_SPLIT_RE.split(text.strip()) if word]
    if not words:
        return 0
    return tts.base_stage_ms + len(words) * tts.ms_per_word


def display_window_ms(stages: list[TTSStage], settings: TTSSettings | None = None) -> int:
    if not stages:
        return 0
    tts = settings or TTSSettings()
    longest = max(stage.delay_ms + estimate_speech_ms(stage.text, tts) for stage in stages)
    return min(tts.max_window_ms, max(tts.min_window_ms, longest + tts.tail_padding_ms))
