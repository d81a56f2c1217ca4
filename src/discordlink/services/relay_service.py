from __future__ import annotations

from typing import Any, Awaitable, Callable

import discord

from discordlink.config import Settings
from discordlink.models import ChannelLink, LocalChatMessage, PresenceEvent
from discordlink.services.chatlog_service import ChatLogService
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.local_chat import LocalChatHub
from discordlink.services.logger_service import LoggerService
from discordlink.services.mention_resolver import MentionPolicy, format_outbound, readable_inbound, strip_tags
from discordlink.utils.discord_utils import (
    channel_by_name_or_id,
    channel_has_permission,
    guild_by_name_or_id,
    maybe_get_member,
    mention_universe,
)

ECHO_TOKEN = "[ECHO]"
NAMETAG_COLOR = "7289DAFF"
DISCORD_MESSAGE_LIMIT = 2000


class RelayService:
    def __init__(
        self,
        settings: Settings,
        registry: ChannelLinkRegistry,
        logger: LoggerService,
        local_chat: LocalChatHub,
        chatlog: ChatLogService,
        client: discord.Client,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.logger = logger
        self.local_chat = local_chat
        self.chatlog = chatlog
        self.client = client
        self.relay_user = local_chat.get_or_create_user(settings.relay_user_name)
        self.on_presence: Callable[[PresenceEvent], Awaitable[None]] | None = None
        self.listening = False

    def start(self) -> bool:
        if self.listening:
            return False
        self.local_chat.messages.subscribe(self.on_local_message)
        self.listening = True
        return True

    def stop(self) -> bool:
        if not self.listening:
            return False
        self.local_chat.messages.unsubscribe(self.on_local_message)
        self.listening = False
        return True

    # Game -> Discord

    async def on_local_message(self, message: LocalChatMessage) -> None:
        self.logger.debug("relay.local_message", text=message.text, tag=message.tag, sender=message.sender)
        if message.sender == self.relay_user.name and not message.text.startswith(ECHO_TOKEN):
            return
        if message.is_system or not message.sender.strip():
            await self._on_system_message(message)
            return
        tag = message.tag[1:] if message.tag.startswith("#") else message.tag
        link = self.registry.link_for_local_channel(tag)
        if link is None or not link.external_channel or not link.external_guild:
            return
        await self.forward_to_discord(message, link)

    async def _on_system_message(self, message: LocalChatMessage) -> None:
        if message.presence is None or self.on_presence is None:
            return
        await self.on_presence(message.presence)

    async def forward_to_discord(self, message: LocalChatMessage, link: ChannelLink) -> bool:
        if not self.listening or self.client.is_closed():
            self.logger.debug("relay.dropped_disconnected", sender=strip_tags(message.sender))
            return False
        sender = strip_tags(message.sender)
        guild = guild_by_name_or_id(self.client, link.external_guild)
        if guild is None:
            self.logger.error(
                "relay.forward_failed",
                message=(
                    f"Failed to forward Eco message from user {sender} as no guild with the name or ID "
                    f"{link.external_guild} exists"
                ),
            )
            return False
        channel = channel_by_name_or_id(guild, link.external_channel)
        if channel is None:
            self.logger.error(
                "relay.forward_failed",
                message=(
                    f"Failed to forward Eco message from user {sender} as no channel with the name or ID "
                    f"{link.external_channel} exists in the guild {guild.name}"
                ),
            )
            return False
        body = format_outbound(message.text, message.sender, mention_universe(guild), MentionPolicy.for_link(link))
        result = await self.send_message_to_channel(body, channel)
        await self.chatlog.write("Eco", message.sender, message.text)
        return result == "Message sent successfully!"

    # Discord -> game

    async def on_discord_message(self, message: discord.Message) -> None:
        self.logger.debug(
            "relay.discord_message",
            text=message.content,
            channel=getattr(message.channel, "name", ""),
            sender=str(message.author),
        )
        if not self.listening:
            return
        me = self.client.user
        if me is not None and message.author.id == me.id:
            return
        content = message.content or ""
        if content.startswith(self.settings.command_prefix):
            return
        channel = message.channel
        link = self.registry.link_for_external_channel(str(getattr(channel, "name", ""))) or (
            self.registry.link_for_external_channel(str(channel.id))
        )
        if link is None or not link.local_channel:
            return
        await self.forward_to_local(message, link.local_channel)

    async def forward_to_local(self, message: discord.Message, local_channel: str) -> str:
        author = message.author
        member = await maybe_get_member(message.guild, author.id)
        if member is not None:
            nametag = f"<b><color=#{NAMETAG_COLOR}>{member.display_name}</color></b>"
        else:
            nametag = author.name
        text = f"#{local_channel} {nametag}: {self.readable_content(message)}"
        self.local_chat.send_as(self.relay_user, local_channel, text)
        await self.chatlog.write("Discord", author.name, message.content or "")
        return text

    def readable_content(self, message: discord.Message) -> str:
        guild = message.guild
        users: list[tuple[int, str]] = []
        for user in message.mentions:
            if user is None:
                continue
            member = guild.get_member(user.id) if guild is not None else None
            if member is None:
                continue
            users.append((user.id, member.display_name))
        roles = [(role.id, role.name) for role in message.role_mentions if role is not None]
        channels = [(channel.id, channel.name) for channel in message.channel_mentions if channel is not None]
        return readable_inbound(message.content or "", users, roles, channels)

    # Direct sends

    async def send_message(self, text: str, channel_name_or_id: str, guild_name_or_id: str) -> str:
        if self.client.is_closed():
            return "No discord client"
        guild = guild_by_name_or_id(self.client, guild_name_or_id)
        if guild is None:
            return "No guild of that name found"
        channel = channel_by_name_or_id(guild, channel_name_or_id)
        return await self.send_message_to_channel(text, channel)

    async def send_message_as_user(
        self,
        text: str,
        username: str,
        channel_name_or_id: str,
        guild_name_or_id: str,
    ) -> str:
        guild = guild_by_name_or_id(self.client, guild_name_or_id)
        if guild is None:
            return "No guild of that name found"
        channel = channel_by_name_or_id(guild, channel_name_or_id)
        if channel is None:
            return "No channel of that name or ID found in that guild"
        link = self.registry.link_for_guild_channel(guild.name, channel.name)
        body = format_outbound(text, username, mention_universe(guild), MentionPolicy.for_link(link))
        return await self.send_message_to_channel(body, channel)

    def default_channel_for_player(self, username: str) -> Any:
        player = self.registry.player_config(username)
        if player is None or not player.has_default_channel:
            return None
        guild = guild_by_name_or_id(self.client, player.default_guild)
        return channel_by_name_or_id(guild, player.default_channel)

    async def send_message_to_default_channel(self, text: str, username: str) -> str:
        player = self.registry.player_config(username)
        if player is None or not player.has_default_channel:
            return "No default channel set for that player"
        return await self.send_message_as_user(text, username, player.default_channel, player.default_guild)

    async def send_message_to_channel(self, text: str, channel: Any) -> str:
        if self.client.is_closed():
            return "No discord client"
        if channel is None:
            return "No channel of that name or ID found in that guild"
        if not channel_has_permission(channel, "send_messages"):
            self.logger.error("relay.send_forbidden", channel=str(getattr(channel, "name", "")))
            return "Missing permission to send messages in that channel"
        try:
            remaining = text
            while remaining:
                await channel.send(remaining[:DISCORD_MESSAGE_LIMIT])
                remaining = remaining[DISCORD_MESSAGE_LIMIT:]
        except discord.HTTPException as exc:
            self.logger.error("relay.send_failed", channel=str(getattr(channel, "name", "")), error=str(exc)[:300])
            return f"Failed to send message: {exc}"
        return "Message sent successfully!"
