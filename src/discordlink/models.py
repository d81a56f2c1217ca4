from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


def normalize_channel_name(name: str) -> str:
    """Discord text channel names are lowercase and use dashes instead of spaces."""
    return name.lower().replace(" ", "-")


def _text(value: Any) -> str:
    return str(value or "").strip()


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


class StatusComponent(enum.IntFlag):
    NONE = 0
    NAME = 1 << 0
    DESCRIPTION = 1 << 1
    LOGO = 1 << 2
    ADDRESS = 1 << 3
    PLAYER_COUNT = 1 << 4
    PLAYER_LIST = 1 << 5
    TIME_SINCE_START = 1 << 6
    TIME_REMAINING = 1 << 7
    METEOR_HAS_HIT = 1 << 8
    WORLD_LEADER = 1 << 9


DEFAULT_STATUS_COMPONENTS = (
    StatusComponent.NAME
    | StatusComponent.LOGO
    | StatusComponent.ADDRESS
    | StatusComponent.PLAYER_COUNT
    | StatusComponent.PLAYER_LIST
    | StatusComponent.TIME_SINCE_START
    | StatusComponent.TIME_REMAINING
    | StatusComponent.WORLD_LEADER
)

# Row keys used by the config document, one per component bit.
STATUS_COMPONENT_KEYS: dict[str, StatusComponent] = {
    "use_name": StatusComponent.NAME,
    "use_description": StatusComponent.DESCRIPTION,
    "use_logo": StatusComponent.LOGO,
    "use_address": StatusComponent.ADDRESS,
    "use_player_count": StatusComponent.PLAYER_COUNT,
    "use_player_list": StatusComponent.PLAYER_LIST,
    "use_time_since_start": StatusComponent.TIME_SINCE_START,
    "use_time_remaining": StatusComponent.TIME_REMAINING,
    "use_meteor_has_hit": StatusComponent.METEOR_HAS_HIT,
    "use_world_leader": StatusComponent.WORLD_LEADER,
}


@dataclass(frozen=True)
class ChannelLink:
    external_guild: str
    external_channel: str
    local_channel: str
    allow_user_mentions: bool = True
    allow_role_mentions: bool = True
    allow_channel_mentions: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ChannelLink":
        return cls(
            external_guild=_text(row.get("discord_guild")),
            external_channel=_text(row.get("discord_channel")).lstrip("#"),
            local_channel=_text(row.get("eco_channel")),
            allow_user_mentions=_flag(row.get("allow_user_mentions"), True),
            allow_role_mentions=_flag(row.get("allow_role_mentions"), True),
            allow_channel_mentions=_flag(row.get("allow_channel_mentions"), True),
        )

    @property
    def identity(self) -> tuple[str, str, str]:
        return (
            self.external_guild.lower(),
            normalize_channel_name(self.external_channel),
            self.local_channel.lower(),
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.external_guild and self.external_channel and self.local_channel)

    @property
    def link_id(self) -> str:
        return f"{self.external_guild} - {self.external_channel} <--> {self.local_channel} (Chat Link)"

    def __str__(self) -> str:
        return self.link_id


@dataclass(frozen=True)
class StatusChannelConfig:
    external_guild: str
    external_channel: str
    components: StatusComponent = DEFAULT_STATUS_COMPONENTS

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StatusChannelConfig":
        components = StatusComponent.NONE
        for key, bit in STATUS_COMPONENT_KEYS.items():
            if _flag(row.get(key), bool(DEFAULT_STATUS_COMPONENTS & bit)):
                components |= bit
        return cls(
            external_guild=_text(row.get("discord_guild")),
            external_channel=_text(row.get("discord_channel")).lstrip("#"),
            components=components,
        )

    @property
    def identity(self) -> tuple[str, str]:
        return (self.external_guild.lower(), normalize_channel_name(self.external_channel))

    @property
    def is_complete(self) -> bool:
        return bool(self.external_guild and self.external_channel)

    @property
    def link_id(self) -> str:
        return f"{self.external_guild} - {self.external_channel} (Eco Status)"

    def __str__(self) -> str:
        return self.link_id


@dataclass(frozen=True)
class PlayerConfig:
    username: str
    default_guild: str = ""
    default_channel: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PlayerConfig":
        return cls(
            username=_text(row.get("username")),
            default_guild=_text(row.get("default_guild")),
            default_channel=_text(row.get("default_channel")),
        )

    @property
    def has_default_channel(self) -> bool:
        return bool(self.default_guild and self.default_channel)


class PresenceEvent(enum.Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    FIRST_LOGIN = "first_login"


@dataclass(frozen=True)
class LocalChatMessage:
    text: str
    sender: str
    tag: str
    is_system: bool = False
    presence: PresenceEvent | None = None


@dataclass
class ServerStatus:
    name: str = ""
    description: str = ""
    logo_url: str = ""
    address: str = ""
    player_count: int = 0
    max_players: int = 0
    players: list[str] = field(default_factory=list)
    time_since_start: str = ""
    time_remaining: str = ""
    meteor_has_hit: bool = False
    world_leader: str = ""
