from __future__ import annotations

import json

import pytest

from stream_notification_engine.config import (
    ConfigService,
    Settings,
    coerce_bool,
    coerce_number,
    load_settings,
)
from stream_notification_engine.errors import ConfigError

from conftest import CaptureBus


def test_load_settings_yaml_with_env_override(monkeypatch, tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
general:
  cmd_cooldown_sec: 30
twitch:
  enabled: true
  username: streamer
commands:
  hello: "!hello, hello-media"
""",
        encoding="utf-8",
    )

    monkeypatch.setenv("SNE__GENERAL__TTS_ENABLED", "true")
    settings = load_settings(config_path)

    assert settings.general.cmd_cooldown_sec == 30
    assert settings.general.tts_enabled is True
    assert settings.twitch.enabled is True
    assert settings.twitch.username == "streamer"
    assert settings.commands == {"hello": "!hello, hello-media"}


def test_load_settings_ini_coerces_strings(tmp_path) -> None:
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        """
[general]
tts_enabled = TRUE
greetings_enabled = yes
global_cmd_cooldown_ms = 2500
cmd_cooldown_sec = soon

[tiktok]
enabled = true
gifts_enabled = false
""",
        encoding="utf-8",
    )
    settings = load_settings(config_path)

    assert settings.general.tts_enabled is True
    # Only the literal "true" enables a flag.
    assert settings.general.greetings_enabled is False
    assert settings.general.global_cmd_cooldown_ms == 2500
    assert settings.general.cmd_cooldown_sec == 60
    assert settings.tiktok.enabled is True
    assert settings.tiktok.gifts_enabled is False


def test_load_settings_json(tmp_path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"timing": {"transition_delay_ms": 50}}), encoding="utf-8")
    settings = load_settings(config_path)
    assert settings.timing.transition_delay_ms == 50


def test_load_settings_unsupported_format(tmp_path) -> None:
    config_path = tmp_path / "config.txt"
    config_path.write_text("noop", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(config_path)


def test_coercion_helpers() -> None:
    assert coerce_bool("true") is True
    assert coerce_bool(" True ") is True
    assert coerce_bool("1") is False
    assert coerce_bool(None, default=True) is True
    assert coerce_bool(0, default=True) is True
    assert coerce_bool(False, default=True) is False
    assert coerce_number("12.5", 0) == 12.5
    assert coerce_number("abc", 7) == 7
    assert coerce_number("inf", 3) == 3
    assert coerce_number("4.9", 0, int) == 4


def test_get_missing_key_raises_config_error() -> None:
    config = ConfigService(Settings())
    with pytest.raises(ConfigError) as excinfo:
        config.get("general", "no_such_key")
    assert "Missing config general.no_such_key" in str(excinfo.value)
    with pytest.raises(ConfigError):
        config.get_section("nope")
    assert config.get_bool("general", "no_such_key", default=True) is True
    assert config.get_number("general", "global_cmd_cooldown_ms", 0) == 60_000


def test_are_notifications_enabled_prefers_platform_value() -> None:
    config = ConfigService(
        Settings(
            general={"gifts_enabled": True, "follows_enabled": False},
            tiktok={"gifts_enabled": False},
        )
    )
    assert config.are_notifications_enabled("gifts_enabled", "tiktok") is False
    assert config.are_notifications_enabled("gifts_enabled", "twitch") is True
    assert config.are_notifications_enabled("follows_enabled", "twitch") is False
    assert config.are_notifications_enabled("unknown_flag") is True


def test_get_command_prefers_vfx_triggers() -> None:
    config = ConfigService(
        Settings(
            commands={"follows": "!follow|!party, follow-media", "raids": "!raid, raid-media"},
            vfx_triggers={"follows": "!follow|!party"},
        )
    )
    assert config.get_command("follows") == "!follow|!party"
    assert config.get_command("raids") == "!raid"
    assert config.get_command("gifts") is None


def test_set_publishes_config_changed() -> None:
    bus = CaptureBus()
    config = ConfigService(Settings(), bus=bus)
    config.set("general", "tts_enabled", True)

    assert config.settings.general.tts_enabled is True
    (payload,) = bus.payloads("config:changed")
    assert payload["section"] == "general"
    assert payload["old_value"] is False
