from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import msgpack

INVITE_LINK_TOKEN = "[LINK]"
AUTOSAVE_INTERVAL_SEC = 5

DEFAULT_STORE: dict[str, Any] = {
    "meta": {"version": 1},
    "config": {
        "bot_token": "",
        "chat_channel_links": [],
        "status_channels": [],
        "player_configs": [],
        "server_name": "",
        "server_description": "",
        "server_logo": "",
        "server_ip": "",
        "log_chat": False,
        "chatlog_path": "data/chatlog.txt",
        "eco_command_channel": "General",
        "invite_message": "Join us on Discord!\n" + INVITE_LINK_TOKEN,
    },
    "logs": [],
}


class MessagePackStore:
    """Single msgpack document holding the link configuration and recent log rows."""

    def __init__(self, path: Path, *, autosave_interval: float = AUTOSAVE_INTERVAL_SEC) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.autosave_interval = autosave_interval
        self._lock = asyncio.Lock()
        self._dirty = False
        self.loaded = False
        self.recovered_from: Path | None = None
        self.data: dict[str, Any] = _clone_defaults()

    @property
    def config(self) -> dict[str, Any]:
        return self.data["config"]

    @property
    def dirty(self) -> bool:
        return self._dirty

    def touch(self) -> None:
        self._dirty = True

    async def load(self) -> None:
        async with self._lock:
            if self.path.exists():
                self.data = self._read_or_quarantine()
                self._backfill_defaults()
            else:
                self.data = _clone_defaults()
                self._write_unlocked()
            self.loaded = True

    def _read_or_quarantine(self) -> dict[str, Any]:
        try:
            data = msgpack.unpackb(self.path.read_bytes(), raw=False)
        except (ValueError, msgpack.ExtraData, msgpack.FormatError, msgpack.StackError):
            data = None
        if isinstance(data, dict):
            return data
        # Keep the unreadable file for inspection and start over from defaults.
        bad = self.path.with_suffix(self.path.suffix + ".bad")
        self.path.replace(bad)
        self.recovered_from = bad
        self._dirty = True
        return _clone_defaults()

    async def save(self) -> None:
        async with self._lock:
            self._write_unlocked()

    async def autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            if self._dirty:
                await self.save()

    def _write_unlocked(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(msgpack.packb(self.data, use_bin_type=True))
        tmp.replace(self.path)
        self._dirty = False

    def _backfill_defaults(self) -> None:
        defaults = _clone_defaults()
        changed = False
        for key, value in defaults.items():
            if key not in self.data:
                self.data[key] = value
                changed = True
        if not isinstance(self.data["config"], dict):
            self.data["config"] = defaults["config"]
            changed = True
        for key, value in defaults["config"].items():
            if key not in self.data["config"]:
                self.data["config"][key] = value
                changed = True
        if changed:
            self._dirty = True


def _clone_defaults() -> dict[str, Any]:
    return msgpack.unpackb(msgpack.packb(DEFAULT_STORE, use_bin_type=True), raw=False)
