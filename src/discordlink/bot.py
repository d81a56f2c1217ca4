from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine

import discord
from discord.ext import commands

from discordlink.config import Settings
from discordlink.models import PresenceEvent, ServerStatus
from discordlink.services.chatlog_service import ChatLogService
from discordlink.services.config_service import ConfigService
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.local_chat import LocalChatHub
from discordlink.services.logger_service import LoggerService
from discordlink.services.relay_service import RelayService
from discordlink.services.status_service import StatusService
from discordlink.services.verification_service import (
    GUILD_VERIFICATION_DELAY_SEC,
    STATIC_VERIFICATION_DELAY_SEC,
    VerificationService,
)
from discordlink.storage import MessagePackStore

STATUS_STARTUP_DELAY_SEC = 10
RESTART_TIMEOUT_SEC = 60

STATUS_IDLE = "No Connection Attempt Made"
STATUS_SETTING_UP = "Setting up client"
STATUS_CONNECTING = "Attempting connection..."
STATUS_CONNECTED = "Connection successful"
STATUS_FAILED = "Connection failed"


class DiscordLinkBot(commands.Bot):
    def __init__(
        self,
        settings: Settings,
        *,
        local_chat: LocalChatHub | None = None,
        status_source: Callable[[], ServerStatus] | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        super().__init__(command_prefix=settings.command_prefix, intents=intents, help_command=None)
        self.settings = settings
        self.store = MessagePackStore(settings.store_path)
        self.logger = LoggerService(self.store, verbose=settings.debug)
        self.registry = ChannelLinkRegistry(self.store)
        self.config = ConfigService(settings, self.registry, self.logger)
        self.local_chat = local_chat or LocalChatHub(self.logger)
        self.chatlog = ChatLogService(self.logger)
        self.relay = RelayService(settings, self.registry, self.logger, self.local_chat, self.chatlog, self)
        self.verification = VerificationService(self.registry, self.logger, self.local_chat, self)
        self.status_service = StatusService(self.registry, self.logger, self, status_source or self._default_status)
        self.relay.on_presence = self._on_presence
        self.connection_status = STATUS_IDLE
        self._autosave_task: asyncio.Task | None = None
        self._status_task: asyncio.Task | None = None
        self._static_verification_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._ready_once = False
        self._restart_event = asyncio.Event()
        self._restart_requested = False
        self._host_loop: asyncio.AbstractEventLoop | None = None
        self._restart_lock = asyncio.Lock()
        self._shutdown = False
        self.config.subscribe("token_changed", lambda: self._spawn(self.restart_client(), "client-restart"))
        self.config.subscribe("chatlog_toggled", self._sync_chatlog)
        self.config.subscribe("chatlog_path_changed", self._sync_chatlog)
        self.config.subscribe("links_changed", self._on_links_changed)

    async def setup_hook(self) -> None:
        # Runs on every login, including the ones that follow a restart.
        # Client.close() resets self.loop, so keep our own handle for host threads.
        self._host_loop = asyncio.get_running_loop()
        self.local_chat.bind(self._host_loop)
        if not self.store.loaded:
            await self.store.load()
            if self.store.recovered_from is not None:
                self.logger.error("store.recovered", message=f"Unreadable store moved to {self.store.recovered_from}")
            self.config.snapshot()
            self.config.apply()
            self._sync_chatlog()
        if self._autosave_task is None or self._autosave_task.done():
            self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="msgpack-autosave")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _default_status(self) -> ServerStatus:
        players = self.local_chat.online_players()
        return ServerStatus(
            name=str(self.registry.setting("server_name", "") or ""),
            description=str(self.registry.setting("server_description", "") or ""),
            logo_url=str(self.registry.setting("server_logo", "") or ""),
            address=str(self.registry.setting("server_ip", "") or ""),
            player_count=len(players),
            players=players,
        )

    # Connection lifecycle

    async def serve(self) -> None:
        """Connect and keep reconnecting after each requested restart until shutdown."""
        while not self._shutdown:
            connected = await self.connect_client()
            if self._shutdown:
                break
            if connected and not self._restart_requested:
                break
            # start() returns as soon as the gateway closes, before close() has
            # finished; the event is only set once the restart sequence is done.
            # A failed client stays down here until the token changes.
            await self._restart_event.wait()
            self._restart_event.clear()
            self._restart_requested = False
            if self._shutdown:
                break
            self.clear()

    async def connect_client(self) -> bool:
        self.connection_status = STATUS_CONNECTING
        try:
            await self.start(self.config.current_token())
        except (discord.LoginFailure, discord.HTTPException, discord.GatewayNotFound, OSError) as exc:
            self.logger.error("client.connect_failed", message=f"Error connecting to discord: {exc}")
            self.connection_status = STATUS_FAILED
            if not self.is_closed():
                await self.close()
            return False
        return True

    async def restart_client(self) -> None:
        async with self._restart_lock:
            self.connection_status = STATUS_SETTING_UP
            self._cancel_timers()
            await self.verification.reset()
            await self.status_service.clear_cache()
            self.relay.stop()
            self._restart_requested = True
            try:
                await self.close()
            except (discord.HTTPException, OSError) as exc:
                self.logger.error("client.disconnect_failed", message=f"Disconnecting from discord: {exc}")
                self.connection_status = STATUS_FAILED
            self._ready_once = False
            self.logger.log("client.restarting")
            self._restart_event.set()

    def restart_threadsafe(self, timeout: float = RESTART_TIMEOUT_SEC) -> None:
        """Blocking restart for callers on a thread other than the bot's loop."""
        future = asyncio.run_coroutine_threadsafe(self.restart_client(), self._require_host_loop())
        future.result(timeout)

    def _require_host_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._host_loop
        if loop is None or loop.is_closed():
            raise RuntimeError("DiscordLink bot loop is not running")
        return loop

    async def shutdown(self) -> None:
        self._shutdown = True
        self._cancel_timers()
        self.relay.stop()
        self.chatlog.stop()
        await self.status_service.clear_cache()
        if self._autosave_task is not None:
            self._autosave_task.cancel()
        await self.store.save()
        if not self.is_closed():
            await self.close()
        self._restart_event.set()

    def _cancel_timers(self) -> None:
        for task in (self._status_task, self._static_verification_task):
            if task is not None and not task.done():
                task.cancel()
        self._status_task = None
        self._static_verification_task = None
        self.verification.cancel_timeout()

    # Configuration reactions

    async def apply_config(self) -> bool:
        return self.config.apply()

    def apply_config_threadsafe(self, timeout: float = RESTART_TIMEOUT_SEC) -> bool:
        future = asyncio.run_coroutine_threadsafe(self.apply_config(), self._require_host_loop())
        return future.result(timeout)

    def _sync_chatlog(self) -> None:
        enabled = bool(self.registry.setting("log_chat", False))
        path = str(self.registry.setting("chatlog_path", "") or "")
        if not enabled or not path:
            self.chatlog.stop()
            return
        if self.chatlog.active and str(self.chatlog.path) == path:
            return
        self.chatlog.restart(path)

    def _on_links_changed(self) -> None:
        if not self.is_ready():
            return
        self._spawn(self.verification.verify_channel_links(), "link-verification")
        self.status_service.request_refresh()

    async def _on_presence(self, event: PresenceEvent) -> None:
        self.logger.debug("status.presence", presence=event.value)
        if self.is_ready():
            self.status_service.request_refresh()

    # Discord events

    async def on_ready(self) -> None:
        self.connection_status = STATUS_CONNECTED
        self.logger.log("client.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        # Message IDs from an earlier session may point at deleted or moved messages.
        await self.status_service.clear_cache()
        self.relay.start()
        if not self._ready_once:
            self._ready_once = True
            self.verification.begin()
            self.verification.schedule_timeout()
            self._static_verification_task = asyncio.create_task(
                self._run_static_verification(), name="static-verification"
            )
        if self._status_task is None or self._status_task.done():
            self._status_task = asyncio.create_task(self._run_status_loop(), name="status-refresh")

    async def _run_static_verification(self) -> None:
        # Let the game server finish its own startup output first.
        await asyncio.sleep(STATIC_VERIFICATION_DELAY_SEC)
        self.verification.verify_static()

    async def _run_status_loop(self) -> None:
        await asyncio.sleep(STATUS_STARTUP_DELAY_SEC)
        while True:
            try:
                await self.status_service.refresh_all()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("status.loop_failed", error=str(exc)[:300])
            await asyncio.sleep(self.settings.status_interval_sec)

    async def on_guild_available(self, guild: discord.Guild) -> None:
        self.logger.debug("client.guild_available", guild_id=guild.id, guild_name=guild.name)
        await asyncio.sleep(GUILD_VERIFICATION_DELAY_SEC)
        await self.verification.verify_channel_links()

    async def on_resumed(self) -> None:
        self.logger.log("client.resumed", message="Resumed connection")

    async def on_disconnect(self) -> None:
        self.logger.debug("client.socket_closed")

    async def on_message(self, message: discord.Message) -> None:
        await self.relay.on_discord_message(message)
        await self.process_commands(message)

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        # Commands belong to whoever registers cogs on this bot; unknown ones are not ours to report.
        if isinstance(exception, commands.CommandNotFound):
            return
        self.logger.error("command.error", error=str(exception), command=ctx.command.name if ctx.command else "unknown")


def main() -> None:
    settings = Settings.load()
    bot = DiscordLinkBot(settings)
    discord.utils.setup_logging()

    async def runner() -> None:
        try:
            await bot.serve()
        finally:
            if not bot._shutdown:
                await bot.shutdown()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        return
