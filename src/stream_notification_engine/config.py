from __future__ import annotations

import configparser
import json
import math
import os
import types
from pathlib import Path
from typing import Any, Union, get_args, get_origin

import structlog
import yaml
from deepmerge import Merger
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stream_notification_engine.errors import ConfigError
from stream_notification_engine.ports.bus import EventBusPort

logger = structlog.get_logger(__name__)

ENV_PREFIX = "SNE__"


def coerce_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return default


def coerce_number(value: Any, default: float | int | None, kind: type = float) -> Any:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number):
        return default
    if kind is int:
        return int(number)
    return number


def _scalar_kind(annotation: Any) -> type | None:
    if annotation in (bool, int, float):
        return annotation
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        for arg in get_args(annotation):
            if arg in (bool, int, float):
                return arg
    return None


class IniSection(BaseModel):
    """Section model that accepts raw INI strings for typed fields."""

    model_config = ConfigDict(extra="allow")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_ini_strings(cls, value: Any, info: ValidationInfo) -> Any:
        if not isinstance(value, str) or info.field_name is None:
            return value
        field = cls.model_fields.get(info.field_name)
        if field is None:
            return value
        kind = _scalar_kind(field.annotation)
        if kind is bool:
            return coerce_bool(value)
        if kind in (int, float):
            return coerce_number(value, field.get_default(call_default_factory=True), kind)
        return value


class GeneralSettings(IniSection):
    debug_enabled: bool = False
    messages_enabled: bool = True
    commands_enabled: bool = True
    greetings_enabled: bool = True
    follows_enabled: bool = True
    gifts_enabled: bool = True
    raids_enabled: bool = True
    paypiggies_enabled: bool = True
    shares_enabled: bool = True
    filter_old_messages: bool = True
    keyword_parsing_enabled: bool = True
    tts_enabled: bool = False
    cmd_cooldown_sec: float = 60
    global_cmd_cooldown_ms: int = 60_000
    fallback_username: str = "Unknown User"
    anonymous_username: str = "Anonymous User"
    user_suppression_enabled: bool = True
    max_notifications_per_user: int = 5
    suppression_window_ms: int = 60_000
    suppression_duration_ms: int = 300_000
    suppression_cleanup_interval_ms: int = 300_000
    max_message_length: int = 500
    stream_detection_enabled: bool = True
    vfx_file_path: str = ""


class TimingSettings(IniSection):
    notification_clear_delay_ms: int = 500
    transition_delay_ms: int = 200
    chat_message_duration_ms: int = 4500
    gift_vfx_delay_ms: int = 2000
    vfx_completion_timeout_ms: int = 10_000
    not_ready_retry_ms: int = 1000


class TTSSettings(IniSection):
    base_stage_ms: int = 400
    ms_per_word: int = 170
    message_stage_delay_ms: int = 4000
    tail_padding_ms: int = 1000
    min_window_ms: int = 2000
    max_window_ms: int = 20_000


class CooldownSettings(IniSection):
    default_cooldown_sec: float = 5
    heavy_command_cooldown_sec: float = 30
    heavy_command_threshold: int = 3
    heavy_command_window_sec: float = 60
    max_entries: int = 1000
    cleanup_interval_sec: float = 60


class DisplayQueueSettings(IniSection):
    auto_process: bool = True
    max_queue_size: int = 100


class ObsSettings(IniSection):
    enabled: bool = False
    address: str = "ws://localhost:4455"
    password: str | None = None
    connection_timeout_ms: int = 10_000
    reconnect_backoff_sec: float = 2
    reconnect_max_sec: float = 30
    notification_txt: str = "notification-text"
    notification_scene: str = "notification-scene"
    notification_msg_group: str = "notification-group"
    chat_msg_txt: str = "chat-message-text"
    chat_msg_scene: str = "chat-message-scene"
    chat_msg_group: str = "chat-message-group"
    tts_txt: str = "tts-text"
    platform_logo_prefix: str = "logo-"


class GiftSettings(IniSection):
    gift_video_source: str = "gift-video"
    gift_audio_source: str = "gift-audio"
    low_value_threshold: float = 10
    spam_detection_enabled: bool = True
    spam_detection_window_sec: float = 5
    max_individual_notifications: int = 2
    aggregation_delay_ms: int = 2000


class HandcamSettings(IniSection):
    glow_enabled: bool = False
    source_name: str = "handcam-source"
    glow_filter_name: str = "Glow"
    max_size: float = 50
    ramp_up_sec: float = 0.5
    hold_sec: float = 6.0
    ramp_down_sec: float = 0.5
    total_steps: int = 30


class GoalSettings(IniSection):
    enabled: bool = False
    tiktok_goal_enabled: bool = True
    tiktok_goal_target: float = 1000
    tiktok_goal_currency: str = "coins"
    tiktok_goal_source: str = "tiktok-goal-txt"
    tiktok_paypiggy_equivalent: float = 50
    youtube_goal_enabled: bool = True
    youtube_goal_target: float = 1.0
    youtube_goal_currency: str = "dollars"
    youtube_goal_source: str = "youtube-goal-txt"
    youtube_paypiggy_price: float = 4.99
    twitch_goal_enabled: bool = True
    twitch_goal_target: float = 100
    twitch_goal_currency: str = "bits"
    twitch_goal_source: str = "twitch-goal-txt"
    twitch_paypiggy_equivalent: float = 350


class NotificationSettings(IniSection):
    messages_enabled: bool | None = None
    follows_enabled: bool | None = None
    gifts_enabled: bool | None = None
    raids_enabled: bool | None = None
    paypiggies_enabled: bool | None = None
    shares_enabled: bool | None = None


class PlatformSettings(IniSection):
    enabled: bool = False
    username: str | None = None
    api_key: str | None = None
    data_logging_enabled: bool = False
    notifications_enabled: bool = True
    messages_enabled: bool | None = None
    greetings_enabled: bool | None = None
    follows_enabled: bool | None = None
    gifts_enabled: bool | None = None
    raids_enabled: bool | None = None
    paypiggies_enabled: bool | None = None
    shares_enabled: bool | None = None
    ws_url: str | None = None
    status_url: str | None = None


class LoggingSettings(IniSection):
    level: str = "INFO"
    style: str = "emoji"
    console: bool = True
    file_path: str | None = None


class TokenStoreSettings(IniSection):
    path: str = "./data/twitch-tokens.json"
    platform: str = "twitch"


class GracefulExitSettings(IniSection):
    target_message_count: int | None = None
    force_exit_timeout_sec: float = 10


class DetectorSettings(IniSection):
    poll_interval_sec: float = 15
    request_timeout_sec: float = 5
    retry_max_attempts: int = 3


PLATFORM_SECTIONS: tuple[str, ...] = ("tiktok", "twitch", "youtube", "streamelements", "custom")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    timing: TimingSettings = Field(default_factory=TimingSettings)
    tts: TTSSettings = Field(default_factory=TTSSettings)
    cooldowns: CooldownSettings = Field(default_factory=CooldownSettings)
    display_queue: DisplayQueueSettings = Field(default_factory=DisplayQueueSettings)
    obs: ObsSettings = Field(default_factory=ObsSettings)
    gifts: GiftSettings = Field(default_factory=GiftSettings)
    handcam: HandcamSettings = Field(default_factory=HandcamSettings)
    goals: GoalSettings = Field(default_factory=GoalSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    token_store: TokenStoreSettings = Field(default_factory=TokenStoreSettings)
    graceful_exit: GracefulExitSettings = Field(default_factory=GracefulExitSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    tiktok: PlatformSettings = Field(default_factory=PlatformSettings)
    twitch: PlatformSettings = Field(default_factory=PlatformSettings)
    youtube: PlatformSettings = Field(default_factory=PlatformSettings)
    streamelements: PlatformSettings = Field(default_factory=PlatformSettings)
    custom: PlatformSettings = Field(default_factory=PlatformSettings)
    commands: dict[str, str] = Field(default_factory=dict)
    vfx_triggers: dict[str, str] = Field(default_factory=dict)

    def platform(self, name: str) -> PlatformSettings | None:
        if name not in PLATFORM_SECTIONS:
            return None
        return getattr(self, name)


_MERGER = Merger([(dict, ["merge"]), (list, ["override"])], ["override"], ["override"])


def _merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    return _MERGER.merge(dict(base), override)


def _read_ini(raw: str) -> dict[str, Any]:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser.read_string(raw)
    return {section: dict(parser.items(section)) for section in parser.sections()}


def load_settings(path: Path | None) -> Settings:
    file_data: dict[str, Any] = {}
    if path is not None:
        raw = path.read_text(encoding="utf-8")
        if path.suffix in {".yaml", ".yml"}:
            file_data = yaml.safe_load(raw) or {}
        elif path.suffix == ".json":
            file_data = json.loads(raw)
        elif path.suffix == ".ini":
            file_data = _read_ini(raw)
        else:
            raise ValueError(f"Unsupported config format: {path}")

    _sanitize_env_overrides()
    env_settings = Settings()
    overrides = env_settings.model_dump(exclude_unset=True)
    merged = _merge_settings(file_data, overrides)
    return Settings.model_validate(merged)


def _sanitize_env_overrides(prefix: str = ENV_PREFIX) -> None:
    for key in list(os.environ.keys()):
        if not key.startswith(prefix):
            continue
        value = os.environ.get(key)
        if value is None:
            continue
        if not value.strip():
            os.environ.pop(key, None)
            continue
        suffix = key[len(prefix) :]
        if "__" not in suffix:
            try:
                json.loads(value)
            except ValueError:
                logger.warning("config_env_override_dropped", key=key)
                os.environ.pop(key, None)


_MISSING = object()


class ConfigService:
    def __init__(self, settings: Settings, bus: EventBusPort | None = None) -> None:
        self._settings = settings
        self._bus = bus

    @property
    def settings(self) -> Settings:
        return self._settings

    def get_section(self, section: str) -> dict[str, Any]:
        value = getattr(self._settings, section, _MISSING)
        if value is _MISSING:
            raise ConfigError(
                f"Missing config section: {section}",
                f"Add a [{section}] section to the configuration file",
            )
        if isinstance(value, BaseModel):
            return value.model_dump()
        return dict(value)

    def get(self, section: str, key: str) -> Any:
        current: Any = self.get_section(section)
        for part in key.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
                continue
            raise ConfigError(
                f"Missing config {section}.{key}",
                f"Set '{key}' under [{section}] in the configuration file",
            )
        return current

    def get_bool(self, section: str, key: str, default: bool = False) -> bool:
        try:
            value = self.get(section, key)
        except ConfigError:
            return default
        if value is None:
            return default
        return coerce_bool(value, default)

    def get_number(self, section: str, key: str, default: float) -> float:
        try:
            value = self.get(section, key)
        except ConfigError:
            return default
        return coerce_number(value, default)

    def get_string(self, section: str, key: str, default: str = "") -> str:
        try:
            value = self.get(section, key)
        except ConfigError:
            return default
        if value is None:
            return default
        return str(value)

    def platform_config(self, platform: str) -> PlatformSettings | None:
        return self._settings.platform(platform)

    def are_notifications_enabled(self, setting_key: str, platform: str | None = None) -> bool:
        if platform is not None:
            platform_settings = self._settings.platform(platform)
            if platform_settings is not None:
                value = getattr(platform_settings, setting_key, None)
                if value is None:
                    value = (platform_settings.model_extra or {}).get(setting_key)
                if value is not None:
                    return coerce_bool(value)
        override = getattr(self._settings.notifications, setting_key, None)
        if override is not None:
            return coerce_bool(override)
        general_value = getattr(self._settings.general, setting_key, None)
        if general_value is None:
            return True
        return coerce_bool(general_value, True)

    def get_timing_config(self) -> TimingSettings:
        return self._settings.timing

    def get_tts_config(self) -> TTSSettings:
        return self._settings.tts

    def get_command(self, key: str) -> str | None:
        """Trigger spec for a command key, e.g. ``"!follow|!party"``."""
        trigger = self._settings.vfx_triggers.get(key)
        if trigger:
            return trigger
        line = self._settings.commands.get(key)
        if not line:
            return None
        return line.split(",", 1)[0].strip() or None

    def is_debug_enabled(self) -> bool:
        return self._settings.general.debug_enabled

    def set(self, section: str, key: str, value: Any) -> None:
        target = getattr(self._settings, section, _MISSING)
        if target is _MISSING:
            raise ConfigError(f"Missing config section: {section}")
        if isinstance(target, dict):
            old_value = target.get(key)
            target[key] = value
        else:
            old_value = getattr(target, key, None)
            setattr(target, key, value)
        logger.debug("config_changed", section=section, key=key)
        if self._bus is not None:
            self._bus.emit(
                "config:changed",
                {"section": section, "key": key, "value": value, "old_value": old_value},
            )

    def reload(self, settings: Settings) -> None:
        self._settings = settings
        logger.info("config_reloaded")
        if self._bus is not None:
            self._bus.emit("config:changed", {"section": None, "key": None, "reloaded": True})
