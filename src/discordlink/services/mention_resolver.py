from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from discordlink.models import ChannelLink

# Eco rich-text markup: colors, badges, links, bold, etc.
TAG_PATTERN = re.compile(r"<[^>]*>")
# An indicator followed by everything up to whitespace, the end, or the next indicator.
# A doubled indicator ("@@bob") starts the token at the second one; the first is kept as text.
MENTION_PATTERN = re.compile(r"[@#][^\s@#]+")


@dataclass(frozen=True)
class MentionCandidate:
    name: str
    token: str


@dataclass(frozen=True)
class MentionUniverse:
    """Ordered name -> token candidates available in one guild."""

    roles: Sequence[MentionCandidate] = ()
    members: Sequence[MentionCandidate] = ()
    channels: Sequence[MentionCandidate] = ()


@dataclass(frozen=True)
class MentionPolicy:
    allow_users: bool = True
    allow_roles: bool = True
    allow_channels: bool = True

    @classmethod
    def for_link(cls, link: ChannelLink | None) -> "MentionPolicy":
        if link is None:
            return cls()
        return cls(
            allow_users=link.allow_user_mentions,
            allow_roles=link.allow_role_mentions,
            allow_channels=link.allow_channel_mentions,
        )


def strip_tags(text: str) -> str:
    return TAG_PATTERN.sub("", text)


def format_outbound(
    text: str,
    sender_name: str,
    universe: MentionUniverse,
    policy: MentionPolicy | None = None,
) -> str:
    """Turn a local chat line into a Discord message body.

    The sender label has '@' removed so a username can never ping anyone.
    """
    body = rewrite_mentions(strip_tags(text), universe, policy or MentionPolicy())
    sender = strip_tags(sender_name or "").replace("@", "")
    if not sender:
        return body
    return f"**{sender}**: {body}"


def rewrite_mentions(text: str, universe: MentionUniverse, policy: MentionPolicy) -> str:
    def replace(match: re.Match[str]) -> str:
        raw = match.group(0)
        resolved = resolve_token(raw, universe, policy)
        return raw if resolved is None else resolved

    return MENTION_PATTERN.sub(replace, text)


def resolve_token(raw: str, universe: MentionUniverse, policy: MentionPolicy) -> str | None:
    indicator, candidate = raw[0], raw[1:].lower()
    if indicator == "@":
        # Roles first so a role named like part of a member name is not shadowed.
        if policy.allow_roles:
            hit = _first_contained(candidate, universe.roles)
            if hit is not None:
                return _splice(candidate, hit)
        if policy.allow_users:
            hit = _first_contained(candidate, universe.members)
            if hit is not None:
                return _splice(candidate, hit)
    elif indicator == "#" and policy.allow_channels:
        hit = _first_contained(candidate, universe.channels)
        if hit is not None:
            return _splice(candidate, hit)
    return None


def _first_contained(candidate: str, options: Iterable[MentionCandidate]) -> tuple[str, str] | None:
    for option in options:
        name = option.name.lower()
        if name and name in candidate:
            return name, option.token
    return None


def _splice(candidate: str, hit: tuple[str, str]) -> str:
    name, token = hit
    start = candidate.index(name)
    return candidate[:start] + token + candidate[start + len(name):]


def readable_inbound(
    content: str,
    users: Iterable[tuple[int, str]] = (),
    roles: Iterable[tuple[int, str]] = (),
    channels: Iterable[tuple[int, str]] = (),
) -> str:
    """Replace Discord mention tokens with readable ``@name`` / ``#channel`` text."""
    for user_id, display_name in users:
        readable = f"@{display_name}"
        content = content.replace(f"<@{user_id}>", readable).replace(f"<@!{user_id}>", readable)
    for role_id, role_name in roles:
        content = content.replace(f"<@&{role_id}>", f"@{role_name}")
    for channel_id, channel_name in channels:
        content = content.replace(f"<#{channel_id}>", f"#{channel_name}")
    return content
