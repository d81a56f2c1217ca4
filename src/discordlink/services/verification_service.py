from __future__ import annotations

import asyncio
import enum
import ipaddress

import discord

from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.local_chat import LocalChatHub
from discordlink.services.logger_service import LoggerService
from discordlink.storage import INVITE_LINK_TOKEN
from discordlink.utils.discord_utils import channel_by_name_or_id, guild_by_name_or_id

LINK_VERIFICATION_TIMEOUT_SEC = 15
STATIC_VERIFICATION_DELAY_SEC = 5
GUILD_VERIFICATION_DELAY_SEC = 3


class VerificationStage(enum.Enum):
    UNVERIFIED = "unverified"
    PENDING_STATIC = "pending_static"
    PENDING_CHANNEL_LINKS = "pending_channel_links"
    VERIFIED = "verified"


class VerificationService:
    def __init__(
        self,
        registry: ChannelLinkRegistry,
        logger: LoggerService,
        local_chat: LocalChatHub,
        client: discord.Client,
    ) -> None:
        self.registry = registry
        self.logger = logger
        self.local_chat = local_chat
        self.client = client
        self.stage = VerificationStage.UNVERIFIED
        self.timeout_fired = False
        self._verified: set[str] = set()
        self._lock = asyncio.Lock()
        self._timeout_task: asyncio.Task | None = None

    @property
    def verified_ids(self) -> frozenset[str]:
        return frozenset(self._verified)

    def begin(self) -> None:
        self.stage = VerificationStage.PENDING_STATIC

    # Static checks: configuration only, no live platform data.

    def static_errors(self) -> list[str]:
        errors: list[str] = []
        server_ip = str(self.registry.setting("server_ip", "") or "").strip()
        if server_ip:
            try:
                ipaddress.ip_address(server_ip)
            except ValueError:
                errors.append("[ServerIP] Not a valid IPv4 or IPv6 address")

        known = self.local_chat.known_usernames()
        for player in self.registry.player_configs():
            if not player.username:
                continue
            if player.username not in known:
                errors.append(f'[Player Configs] No user with name "{player.username}" was found')

        command_channel = str(self.registry.setting("eco_command_channel", "") or "")
        if command_channel.strip() and "#" in command_channel:
            errors.append(
                "[Eco Command Channel] Channel name contains a channel indicator (#). The channel indicator will be "
                "added automatically and adding one manually may cause message sending to fail"
            )

        invite_message = str(self.registry.setting("invite_message", "") or "")
        if invite_message.strip() and INVITE_LINK_TOKEN not in invite_message:
            errors.append(
                f"[Invite Message] Message does not contain the invite link token {INVITE_LINK_TOKEN}. If the invite "
                "link has been added manually, consider adding it to the network config instead"
            )
        return errors

    def verify_static(self) -> list[str]:
        errors = self.static_errors()
        if errors:
            self.logger.error("verify.static_errors", report="Static configuration errors detected!\n" + "\n".join(errors))
        else:
            self.logger.log("verify.static_ok", message="Static configuration verification completed without errors")
        if self.stage in (VerificationStage.UNVERIFIED, VerificationStage.PENDING_STATIC):
            self.stage = VerificationStage.PENDING_CHANNEL_LINKS
        return errors

    # Channel links: needs guild/channel directories.

    async def verify_channel_links(self) -> list[str]:
        """Add every resolvable link to the verified set; returns the newly verified IDs."""
        async with self._lock:
            links = self.registry.verifiable_links()
            added: list[str] = []
            for link in links:
                guild = guild_by_name_or_id(self.client, link.external_guild)
                if guild is None:
                    continue
                if channel_by_name_or_id(guild, link.external_channel) is None:
                    continue
                link_id = link.link_id
                if link_id in self._verified:
                    continue
                self._verified.add(link_id)
                added.append(link_id)
                self.logger.log("verify.link_verified", link=link_id)

            if all(link.link_id in self._verified for link in links):
                if self.stage is not VerificationStage.VERIFIED:
                    self.logger.log("verify.all_verified", message="All channel links successfully verified")
                self.stage = VerificationStage.VERIFIED
            elif self.timeout_fired:
                self._report_unverified_unlocked()
            return added

    def unverified_links(self) -> list[str]:
        return [link.link_id for link in self.registry.verifiable_links() if link.link_id not in self._verified]

    async def report_unverified(self) -> list[str]:
        async with self._lock:
            return self._report_unverified_unlocked()

    def _report_unverified_unlocked(self) -> list[str]:
        missing = self.unverified_links()
        if missing:
            self.logger.error("verify.unverified_channels", report="Unverified channels detected:\n" + "\n".join(missing))
        return missing

    def schedule_timeout(self, delay: float = LINK_VERIFICATION_TIMEOUT_SEC) -> asyncio.Task:
        if self._timeout_task is not None and not self._timeout_task.done():
            self._timeout_task.cancel()
        self.timeout_fired = False
        self._timeout_task = asyncio.create_task(self._timeout_after(delay), name="link-verification-timeout")
        return self._timeout_task

    async def _timeout_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            self.timeout_fired = True
            self._report_unverified_unlocked()

    def cancel_timeout(self) -> None:
        if self._timeout_task is not None and not self._timeout_task.done():
            self._timeout_task.cancel()
        self._timeout_task = None

    async def reset(self) -> None:
        self.cancel_timeout()
        async with self._lock:
            self._verified.clear()
            self.timeout_fired = False
            self.stage = VerificationStage.UNVERIFIED
