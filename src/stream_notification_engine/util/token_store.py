from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import orjson
import structlog

from stream_notification_engine.errors import TransportError
from stream_notification_engine.util.clock import SystemClock

logger = structlog.get_logger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700

Refresher = Callable[[dict[str, Any] | None], Awaitable[Mapping[str, Any]]]


class TokenStore:
    """JSON token file shared with other tools; only the platform entry is owned here."""

    def __init__(
        self,
        path: str | Path,
        platform: str = "twitch",
        now_ms: Callable[[], int] = SystemClock.now_ms,
    ) -> None:
        self._path = Path(path)
        self._platform = platform
        self._now_ms = now_ms
        self._tokens: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def tokens(self) -> dict[str, Any] | None:
        return dict(self._tokens) if self._tokens is not None else None

    def _read_file(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        raw = self._path.read_bytes()
        if not raw.strip():
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise TransportError("Invalid token store file") from exc
        if not isinstance(data, dict):
            raise TransportError("Invalid token store file")
        return data

    def load(self) -> dict[str, Any] | None:
        entry = self._read_file().get(self._platform)
        self._tokens = dict(entry) if isinstance(entry, dict) else None
        return self.tokens

    def save(self, tokens: Mapping[str, Any]) -> dict[str, Any]:
        access_token = tokens.get("accessToken")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token store requires accessToken")
        refresh_token = tokens.get("refreshToken")
        if not refresh_token and self._tokens is not None:
            refresh_token = self._tokens.get("refreshToken")
        entry: dict[str, Any] = {
            "accessToken": access_token,
            "refreshToken": refresh_token,
            "expiresAt": tokens.get("expiresAt"),
            "updatedAt": datetime.fromtimestamp(self._now_ms() / 1000, tz=UTC).isoformat(),
        }
        try:
            document = self._read_file()
        except TransportError:
            logger.warning("token_store_unreadable", path=str(self._path))
            document = {}
        document[self._platform] = entry
        self._write(document)
        self._tokens = entry
        logger.info("token_store_saved", platform=self._platform, path=str(self._path))
        return dict(entry)

    def clear(self) -> None:
        try:
            document = self._read_file()
        except TransportError:
            document = {}
        if document.pop(self._platform, None) is not None:
            self._write(document)
        self._tokens = None

    async def refresh(self, refresher: Refresher) -> dict[str, Any]:
        async with self._lock:
            try:
                current = self.load()
            except (OSError, TransportError) as exc:
                logger.warning("token_store_recreated", path=str(self._path), error=str(exc))
                current = self.tokens
                if current is not None:
                    self._write({self._platform: current})
            refreshed = await refresher(current)
            return self.save(refreshed)

    def _write(self, document: Mapping[str, Any]) -> None:
        directory = self._path.parent
        if not directory.exists():
            directory.mkdir(parents=True, mode=DIR_MODE)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        try:
            tmp_path.write_bytes(orjson.dumps(document, option=orjson.OPT_INDENT_2))
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise TransportError(f"Token store write failed: {exc}") from exc

