from __future__ import annotations

import asyncio
from typing import Any, Callable

import discord

from discordlink.models import ServerStatus, StatusChannelConfig, StatusComponent
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.logger_service import LoggerService
from discordlink.utils.discord_utils import channel_by_name_or_id, channel_has_permission, guild_by_name_or_id

STATUS_MARKER = "Live Server Status"
STATUS_COLOR = 0x7289DA
STATUS_HISTORY_SCAN_LIMIT = 50
FIELD_VALUE_LIMIT = 1024


def build_status_embed(status: ServerStatus, components: StatusComponent) -> discord.Embed:
    description_parts: list[str] = []
    if components & StatusComponent.NAME and status.name:
        description_parts.append(f"**{status.name}**")
    if components & StatusComponent.DESCRIPTION and status.description:
        description_parts.append(status.description)
    embed = discord.Embed(
        title=STATUS_MARKER,
        description="\n".join(description_parts) or None,
        color=STATUS_COLOR,
    )
    if components & StatusComponent.LOGO and status.logo_url:
        embed.set_thumbnail(url=status.logo_url)

    def field(name: str, value: str, inline: bool = True) -> None:
        embed.add_field(name=name, value=(value or "-")[:FIELD_VALUE_LIMIT], inline=inline)

    if components & StatusComponent.ADDRESS:
        field("Address", status.address or "Unknown")
    if components & StatusComponent.PLAYER_COUNT:
        count = f"{status.player_count}/{status.max_players}" if status.max_players else str(status.player_count)
        field("Players Online", count)
    if components & StatusComponent.TIME_SINCE_START:
        field("Time Since Start", status.time_since_start)
    if components & StatusComponent.TIME_REMAINING:
        field("Time Remaining", status.time_remaining)
    if components & StatusComponent.METEOR_HAS_HIT:
        field("Meteor Has Hit", "Yes" if status.meteor_has_hit else "No")
    if components & StatusComponent.WORLD_LEADER:
        field("World Leader", status.world_leader or "None")
    if components & StatusComponent.PLAYER_LIST:
        field("Online Players", "\n".join(status.players) or "No players online", inline=False)
    return embed


def embed_to_text(embed: discord.Embed, text_content: str = "") -> str:
    lines: list[str] = []
    if text_content:
        lines.append(text_content)
    if embed.title:
        lines.append(f"**{embed.title}**")
    if embed.description:
        lines.append(embed.description)
    for embed_field in embed.fields:
        lines.append(f"**{embed_field.name}:** {embed_field.value}")
    if embed.footer and embed.footer.text:
        lines.append(embed.footer.text)
    return "\n".join(lines)


def render_status(status: ServerStatus, components: StatusComponent, *, embeds_allowed: bool) -> dict[str, Any]:
    """Keyword arguments for ``send``/``edit``: a rich embed or its flattened text."""
    embed = build_status_embed(status, components)
    if embeds_allowed:
        return {"content": None, "embed": embed}
    return {"content": embed_to_text(embed), "embed": None}


def is_status_message(message: Any, bot_user_id: int | None) -> bool:
    if bot_user_id is None or message.author.id != bot_user_id:
        return False
    if STATUS_MARKER in (message.content or ""):
        return True
    return any(STATUS_MARKER in (embed.title or "") for embed in message.embeds)


class StatusService:
    def __init__(
        self,
        registry: ChannelLinkRegistry,
        logger: LoggerService,
        client: discord.Client,
        status_source: Callable[[], ServerStatus],
    ) -> None:
        self.registry = registry
        self.logger = logger
        self.client = client
        self.status_source = status_source
        self._messages: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    def cached_message_ids(self) -> dict[tuple[str, str], int]:
        return dict(self._messages)

    async def clear_cache(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        async with self._lock:
            self._messages.clear()

    def request_refresh(self) -> asyncio.Task:
        task = asyncio.create_task(self.refresh_all(), name="status-refresh-request")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def refresh_all(self) -> dict[str, str]:
        outcomes: dict[str, str] = {}
        async with self._lock:
            for config in self.registry.status_channels():
                if not config.is_complete:
                    continue
                try:
                    outcomes[config.link_id] = await self._refresh_channel(config)
                except discord.HTTPException as exc:
                    self.logger.error("status.refresh_failed", link=config.link_id, error=str(exc)[:300])
                    outcomes[config.link_id] = "failed"
        return outcomes

    async def refresh_channel(self, config: StatusChannelConfig) -> str:
        async with self._lock:
            return await self._refresh_channel(config)

    async def _refresh_channel(self, config: StatusChannelConfig) -> str:
        guild = guild_by_name_or_id(self.client, config.external_guild)
        channel = channel_by_name_or_id(guild, config.external_channel)
        if channel is None:
            self.logger.debug("status.channel_unresolved", link=config.link_id)
            return "unresolved"
        if not channel_has_permission(channel, "read_message_history"):
            return "skipped"

        key = config.identity
        message = None
        message_id = self._messages.get(key)
        if message_id:
            try:
                message = await channel.fetch_message(message_id)
            except discord.NotFound:
                self._messages.pop(key, None)
                self.logger.log("status.message_missing", link=config.link_id, message_id=message_id)
            except discord.HTTPException as exc:
                self.logger.error("status.fetch_failed", link=config.link_id, error=str(exc)[:300])
                return "failed"

        if message is None:
            message = await self._find_existing(channel)
            if message is not None:
                self._messages[key] = message.id
                self.logger.log("status.message_adopted", link=config.link_id, message_id=message.id)

        payload = render_status(
            self.status_source(),
            config.components,
            embeds_allowed=channel_has_permission(channel, "embed_links"),
        )
        if message is None:
            if not channel_has_permission(channel, "send_messages"):
                return "skipped"
            posted = await channel.send(**payload)
            self._messages[key] = posted.id
            self.logger.log("status.message_created", link=config.link_id, message_id=posted.id)
            return "created"

        await message.edit(**payload)
        return "edited"

    async def _find_existing(self, channel: Any) -> Any:
        me = self.client.user
        bot_user_id = me.id if me is not None else None
        async for message in channel.history(limit=STATUS_HISTORY_SCAN_LIMIT):
            if is_status_message(message, bot_user_id):
                return message
        return None
