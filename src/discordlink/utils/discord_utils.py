from __future__ import annotations

from typing import Any

import discord

from discordlink.services.mention_resolver import MentionCandidate, MentionUniverse

# Snowflakes are far larger than any plausible channel or guild name made of digits.
MIN_SNOWFLAKE = 0xFFFFFFFFFFFFF


async def maybe_get_member(guild: discord.Guild | None, user_id: int) -> discord.Member | None:
    if guild is None:
        return None
    cached = guild.get_member(user_id)
    if cached is not None:
        return cached
    try:
        return await guild.fetch_member(user_id)
    except discord.HTTPException:
        return None


def try_parse_snowflake(name_or_id: str) -> int | None:
    text = str(name_or_id or "").strip()
    if not text.isdigit():
        return None
    value = int(text)
    return value if value > MIN_SNOWFLAKE else None


def guild_by_name(bot: discord.Client, name: str) -> discord.Guild | None:
    wanted = str(name or "").lower()
    for guild in bot.guilds:
        if str(guild.name or "").lower() == wanted:
            return guild
    return None


def guild_by_name_or_id(bot: discord.Client, name_or_id: str) -> discord.Guild | None:
    guild_id = try_parse_snowflake(name_or_id)
    if guild_id is not None:
        return bot.get_guild(guild_id)
    return guild_by_name(bot, name_or_id)


def channel_by_name(guild: discord.Guild | None, channel_name: str) -> Any:
    if guild is None:
        return None
    for channel in guild.text_channels:
        if channel.name == channel_name:
            return channel
    return None


def channel_by_name_or_id(guild: discord.Guild | None, name_or_id: str) -> Any:
    if guild is None:
        return None
    channel_id = try_parse_snowflake(name_or_id)
    if channel_id is not None:
        return guild.get_channel(channel_id)
    return channel_by_name(guild, name_or_id)


def channel_permissions(channel: Any) -> discord.Permissions | None:
    guild = getattr(channel, "guild", None)
    me = getattr(guild, "me", None)
    if me is None:
        return None
    return channel.permissions_for(me)


def channel_has_permission(channel: Any, permission: str) -> bool:
    perms = channel_permissions(channel)
    if perms is None:
        return False
    return bool(getattr(perms, permission, False))


def mention_universe(guild: discord.Guild) -> MentionUniverse:
    roles = [MentionCandidate(role.name, role.mention) for role in guild.roles if role.mentionable]
    members = [MentionCandidate(member.display_name, member.mention) for member in guild.members]
    channels = [MentionCandidate(channel.name, channel.mention) for channel in guild.channels]
    return MentionUniverse(roles=roles, members=members, channels=channels)
