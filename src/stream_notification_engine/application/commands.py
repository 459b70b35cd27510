from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from stream_notification_engine.domain.display import VfxConfig

logger = structlog.get_logger(__name__)

DEFAULT_DURATION_MS = 5000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    key: str
    triggers: tuple[str, ...]
    media_source: str
    keywords: tuple[str, ...]
    duration_ms: int

    @property
    def primary_command(self) -> str:
        return self.triggers[0]


def parse_duration(parts: list[str]) -> int:
    for part in parts[2:]:
        try:
            value = int(part)
        except ValueError:
            continue
        if value > 0:
            return value
    return DEFAULT_DURATION_MS


def parse_command_line(key: str, line: str) -> CommandSpec | None:
    """Parse ``"!t1|!t2, media_source[, kw1|kw2][, duration_ms]"``."""
    parts = [part.strip() for part in line.split(",")]
    triggers = tuple(t.strip().lower() for t in parts[0].split("|") if t.strip())
    if not triggers or len(parts) < 2 or not parts[1]:
        return None
    keywords: tuple[str, ...] = ()
    if len(parts) > 2:
        keywords = tuple(k.strip().lower() for k in parts[2].split("|") if k.strip())
    return CommandSpec(
        key=key,
        triggers=triggers,
        media_source=parts[1],
        keywords=keywords,
        duration_ms=parse_duration(parts),
    )


class CommandParser:
    """Resolves chat triggers and keywords to VFX descriptors."""

    def __init__(
        self,
        commands: Mapping[str, str],
        vfx_file_path: str = "",
        keyword_parsing_enabled: bool = True,
    ) -> None:
        self._vfx_file_path = vfx_file_path
        self._keyword_parsing_enabled = keyword_parsing_enabled
        self._commands = dict(commands)
        self._triggers: dict[str, CommandSpec] = {}
        self._keywords: dict[str, CommandSpec] = {}
        self._regex_cache: dict[str, re.Pattern[str]] = {}
        self._index()

    @property
    def keyword_parsing_enabled(self) -> bool:
        return self._keyword_parsing_enabled

    def _index(self) -> None:
        self._triggers.clear()
        self._keywords.clear()
        self._regex_cache.clear()
        for key, line in self._commands.items():
            if not isinstance(line, str):
                continue
            spec = parse_command_line(key, line)
            if spec is None:
                logger.warning("command_config_invalid", key=key)
                continue
            for trigger in spec.triggers:
                self._triggers[trigger] = spec
            for keyword in spec.keywords:
                self._keywords[keyword] = spec

    def _keyword_regex(self, keyword: str) -> re.Pattern[str]:
        pattern = self._regex_cache.get(keyword)
        if pattern is None:
            pattern = re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)
            self._regex_cache[keyword] = pattern
        return pattern

    def _vfx_for(self, spec: CommandSpec, keyword: str | None = None) -> VfxConfig:
        return VfxConfig(
            command_key=spec.key,
            command=spec.primary_command,
            filename=spec.key,
            media_source=spec.media_source,
            vfx_file_path=self._vfx_file_path,
            duration_ms=spec.duration_ms,
            trigger_word=keyword,
        )

    def get_vfx_config(self, trigger: str | None, message: str | None = None) -> VfxConfig | None:
        if not trigger or not isinstance(trigger, str):
            return None
        spec = self._triggers.get(trigger.strip().lower())
        if spec is not None:
            return self._vfx_for(spec)
        if self._keyword_parsing_enabled and message:
            for keyword, keyword_spec in self._keywords.items():
                if self._keyword_regex(keyword).search(message):
                    return self._vfx_for(keyword_spec, keyword)
        return None

    def parse(self, message: str | None) -> VfxConfig | None:
        if not message or not isinstance(message, str):
            return None
        first = message.strip().split(" ", 1)[0]
        return self.get_vfx_config(first, message)

    def update_config(
        self,
        commands: Mapping[str, str],
        vfx_file_path: str | None = None,
        keyword_parsing_enabled: bool | None = None,
    ) -> None:
        self._commands = dict(commands)
        if vfx_file_path is not None:
            self._vfx_file_path = vfx_file_path
        if keyword_parsing_enabled is not None:
            self._keyword_parsing_enabled = keyword_parsing_enabled
        self._index()

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_commands": len(self._commands),
            "total_triggers": len(self._triggers),
            "total_keywords": len(self._keywords),
            "keyword_parsing_enabled": self._keyword_parsing_enabled,
            "vfx_file_path": self._vfx_file_path,
        }
