from __future__ import annotations

from typing import Any

from discordlink.models import ChannelLink, PlayerConfig, StatusChannelConfig, normalize_channel_name
from discordlink.storage import MessagePackStore


class ChannelLinkRegistry:
    """Typed view over the link configuration document.

    Rows are parsed on every access so edits made by the configuration owner are
    picked up without any reload step. The only rows written here are player
    configs and channel-name corrections.
    """

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store

    def root(self) -> dict[str, Any]:
        node = self.store.data.setdefault("config", {})
        if not isinstance(node, dict):
            self.store.data["config"] = {}
            self.store.touch()
            node = self.store.data["config"]
        return node

    def _rows(self, key: str) -> list[dict[str, Any]]:
        rows = self.root().get(key, [])
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def setting(self, key: str, default: Any = "") -> Any:
        return self.root().get(key, default)

    def channel_links(self) -> list[ChannelLink]:
        return [ChannelLink.from_row(row) for row in self._rows("chat_channel_links")]

    def status_channels(self) -> list[StatusChannelConfig]:
        return [StatusChannelConfig.from_row(row) for row in self._rows("status_channels")]

    def player_configs(self) -> list[PlayerConfig]:
        return [PlayerConfig.from_row(row) for row in self._rows("player_configs")]

    def player_config_row(self, username: str, *, create: bool = True) -> dict[str, Any] | None:
        rows = self.root().get("player_configs")
        if not isinstance(rows, list):
            if not create:
                return None
            rows = []
            self.root()["player_configs"] = rows
        for row in rows:
            if isinstance(row, dict) and str(row.get("username") or "") == username:
                return row
        if not create:
            return None
        row = {"username": username, "default_guild": "", "default_channel": ""}
        rows.append(row)
        self.store.touch()
        return row

    def player_config(self, username: str, *, create: bool = True) -> PlayerConfig | None:
        row = self.player_config_row(username, create=create)
        return PlayerConfig.from_row(row) if row is not None else None

    def set_default_channel_for_player(self, username: str, guild_name: str, channel_name: str) -> PlayerConfig:
        row = self.player_config_row(username)
        row["default_guild"] = guild_name
        row["default_channel"] = channel_name
        self.store.touch()
        return PlayerConfig.from_row(row)

    def link_for_local_channel(self, local_channel: str) -> ChannelLink | None:
        wanted = local_channel.lower()
        for link in self.channel_links():
            if link.local_channel.lower() == wanted:
                return link
        return None

    def link_for_external_channel(self, channel_name_or_id: str) -> ChannelLink | None:
        for link in self.channel_links():
            if link.external_channel == channel_name_or_id:
                return link
        return None

    def link_for_guild_channel(self, guild_name: str, channel_name: str) -> ChannelLink | None:
        guild_key = guild_name.lower()
        channel_key = channel_name.lower()
        for link in self.channel_links():
            if link.external_guild.lower() == guild_key and link.external_channel.lower() == channel_key:
                return link
        return None

    def verifiable_links(self) -> list[ChannelLink | StatusChannelConfig]:
        out: list[ChannelLink | StatusChannelConfig] = [link for link in self.channel_links() if link.is_complete]
        out.extend(status for status in self.status_channels() if status.is_complete)
        return out

    def normalize_external_channels(self) -> list[tuple[str, str, str, str]]:
        """Rewrite external channel names into Discord's canonical form.

        Returns ``(kind, guild, original, corrected)`` for every row that changed.
        """
        corrections: list[tuple[str, str, str, str]] = []
        for kind, key in (("Channel Link", "chat_channel_links"), ("Eco Status Channel", "status_channels")):
            for row in self._rows(key):
                original = str(row.get("discord_channel") or "")
                if not original.strip():
                    continue
                corrected = normalize_channel_name(original)
                if corrected == original:
                    continue
                row["discord_channel"] = corrected
                corrections.append((kind, str(row.get("discord_guild") or ""), original, corrected))
        if corrections:
            self.store.touch()
        return corrections
