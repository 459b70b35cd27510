from __future__ import annotations

import json
import os
import stat

import pytest

from stream_notification_engine.errors import TransportError
from stream_notification_engine.util import token_store as token_store_module
from stream_notification_engine.util.token_store import TokenStore

FIXED_MS = 1_700_000_000_000


def _store(path) -> TokenStore:
    return TokenStore(path, platform="twitch", now_ms=lambda: FIXED_MS)


def test_save_writes_private_file_and_keeps_other_entries(tmp_path) -> None:
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"discord": {"accessToken": "keep-me"}}), encoding="utf-8")
    store = _store(path)

    saved = store.save({"accessToken": "a1", "refreshToken": "r1", "expiresAt": 123})

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["discord"] == {"accessToken": "keep-me"}
    assert document["twitch"]["accessToken"] == "a1"
    assert saved["updatedAt"] == "2023-11-14T22:13:20+00:00"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert not (tmp_path / "tokens.json.tmp").exists()


def test_save_creates_missing_directory(tmp_path) -> None:
    path = tmp_path / "nested" / "tokens.json"
    _store(path).save({"accessToken": "a1"})
    assert path.exists()
    assert stat.S_IMODE(os.stat(path.parent).st_mode) & 0o077 == 0


def test_save_keeps_previous_refresh_token(tmp_path) -> None:
    store = _store(tmp_path / "tokens.json")
    store.save({"accessToken": "a1", "refreshToken": "r1"})
    second = store.save({"accessToken": "a2"})
    assert second["refreshToken"] == "r1"
    with pytest.raises(ValueError, match="accessToken"):
        store.save({"refreshToken": "r2"})


def test_load_rejects_invalid_file(tmp_path) -> None:
    path = tmp_path / "tokens.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(TransportError, match="Invalid token store file"):
        _store(path).load()
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(TransportError):
        _store(path).load()
    assert _store(tmp_path / "missing.json").load() is None


def test_failed_write_leaves_state_unchanged(tmp_path, monkeypatch) -> None:
    path = tmp_path / "tokens.json"
    store = _store(path)
    store.save({"accessToken": "a1", "refreshToken": "r1"})
    before = path.read_bytes()

    def refuse(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(token_store_module.os, "replace", refuse)
    with pytest.raises(TransportError, match="disk full"):
        store.save({"accessToken": "a2"})

    assert store.tokens["accessToken"] == "a1"
    assert path.read_bytes() == before
    assert not (tmp_path / "tokens.json.tmp").exists()


def test_clear_removes_only_own_entry(tmp_path) -> None:
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"other": {"accessToken": "x"}}), encoding="utf-8")
    store = _store(path)
    store.save({"accessToken": "a1"})
    store.clear()
    assert json.loads(path.read_text(encoding="utf-8")) == {"other": {"accessToken": "x"}}
    assert store.tokens is None


@pytest.mark.asyncio
async def test_refresh_passes_current_tokens(tmp_path) -> None:
    store = _store(tmp_path / "tokens.json")
    store.save({"accessToken": "old", "refreshToken": "r1"})
    seen: list[dict | None] = []

    async def refresher(current):
        seen.append(current)
        return {"accessToken": "new", "refreshToken": "r2"}

    result = await store.refresh(refresher)
    assert seen[0]["accessToken"] == "old"
    assert result["accessToken"] == "new"
    assert _store(tmp_path / "tokens.json").load()["refreshToken"] == "r2"


@pytest.mark.asyncio
async def test_refresh_recreates_corrupt_file_from_memory(tmp_path) -> None:
    path = tmp_path / "tokens.json"
    store = _store(path)
    store.save({"accessToken": "old", "refreshToken": "r1"})
    path.write_text("garbage", encoding="utf-8")

    async def refresher(current):
        assert current["accessToken"] == "old"
        return {"accessToken": "new"}

    result = await store.refresh(refresher)
    assert result["refreshToken"] == "r1"
    assert json.loads(path.read_text(encoding="utf-8"))["twitch"]["accessToken"] == "new"
