from __future__ import annotations

import asyncio
from pathlib import Path

from discordlink.models import LocalChatMessage, PresenceEvent
from discordlink.services.chatlog_service import ChatLogService
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.local_chat import LocalChatHub
from discordlink.services.relay_service import RelayService

from discord_stubs import (
    StubChannel,
    StubClient,
    StubGuild,
    StubMessage,
    StubPermissions,
    StubRole,
    StubUser,
    http_error,
    log_events,
    make_settings,
    make_store,
)

ID_CHANNEL = 1100000000000000001


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.store, self.logger = make_store(tmp_path)
        self.store.data["config"]["chat_channel_links"] = [
            {"discord_guild": "Eco Guild", "discord_channel": "general", "eco_channel": "General"},
            {"discord_guild": "Eco Guild", "discord_channel": str(ID_CHANNEL), "eco_channel": "Trade"},
            {"discord_guild": "Lost Guild", "discord_channel": "general", "eco_channel": "Lost"},
        ]
        self.registry = ChannelLinkRegistry(self.store)
        self.hub = LocalChatHub(self.logger)
        self.chatlog = ChatLogService(self.logger)
        self.bob = StubUser(2, "bob", "Bob")
        self.carol = StubUser(5, "carol", "Carol C")
        self.general = StubChannel(10, "general")
        self.trade = StubChannel(ID_CHANNEL, "trade-floor")
        self.guild = StubGuild(
            1,
            "Eco Guild",
            channels=[self.general, self.trade],
            members=[self.bob, self.carol],
            roles=[StubRole(7, "Admin")],
        )
        self.client = StubClient([self.guild])
        self.relay = RelayService(
            make_settings(tmp_path), self.registry, self.logger, self.hub, self.chatlog, self.client
        )
        self.relay.start()

    def discord_message(self, content: str, *, author: StubUser | None = None, channel: StubChannel | None = None):
        return StubMessage(
            author=author or self.carol,
            content=content,
            channel=channel or self.general,
            guild=self.guild,
            mentions=[self.bob] if "<@2>" in content else [],
        )


def test_local_message_is_forwarded_with_mentions(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    asyncio.run(h.relay.on_local_message(LocalChatMessage(text="hello @bob", sender="Alice", tag="#General")))
    assert [m.content for m in h.general.sent] == ["**Alice**: hello <@2>"]


def test_relay_user_messages_are_not_echoed_back(tmp_path: Path) -> None:
    h = Harness(tmp_path)

    async def run() -> None:
        await h.relay.on_local_message(LocalChatMessage(text="#General Carol: hi", sender="Discord", tag="General"))
        await h.relay.on_local_message(LocalChatMessage(text="[ECHO] test", sender="Discord", tag="General"))

    asyncio.run(run())
    assert [m.content for m in h.general.sent] == ["**Discord**: [ECHO] test"]


def test_stopped_relay_drops_local_messages(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.relay.stop()
    assert h.hub.messages.listener_count == 0
    forwarded = asyncio.run(
        h.relay.forward_to_discord(
            LocalChatMessage(text="hi", sender="Alice", tag="General"), h.registry.channel_links()[0]
        )
    )
    assert forwarded is False
    assert h.general.sent == []


def test_missing_guild_is_logged(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    asyncio.run(h.relay.on_local_message(LocalChatMessage(text="hi", sender="Alice", tag="Lost")))
    rows = log_events(h.store, "relay.forward_failed")
    assert "no guild with the name or ID Lost Guild exists" in rows[0]["data"]["message"]


def test_presence_messages_reach_presence_handler_only(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    seen: list[PresenceEvent] = []

    async def on_presence(event: PresenceEvent) -> None:
        seen.append(event)

    h.relay.on_presence = on_presence

    async def run() -> None:
        await h.relay.on_local_message(
            LocalChatMessage(text="alice", sender="", tag="", is_system=True, presence=PresenceEvent.LOGIN)
        )
        await h.relay.on_local_message(LocalChatMessage(text="Server restarting", sender="", tag="General"))

    asyncio.run(run())
    assert seen == [PresenceEvent.LOGIN]
    assert h.general.sent == []


def test_discord_message_reaches_local_chat(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    asyncio.run(h.relay.on_discord_message(h.discord_message("hi <@2>")))
    assert list(h.hub.outbox) == [("Discord", "General", "#General <b><color=#7289DAFF>Carol C</color></b>: hi @Bob")]


def test_discord_channel_matched_by_id(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    asyncio.run(h.relay.on_discord_message(h.discord_message("selling iron", channel=h.trade)))
    assert h.hub.outbox[0][1] == "Trade"


def test_commands_and_own_messages_are_ignored(tmp_path: Path) -> None:
    h = Harness(tmp_path)

    async def run() -> None:
        await h.relay.on_discord_message(h.discord_message("?help"))
        await h.relay.on_discord_message(h.discord_message("loop", author=h.client.user))

    asyncio.run(run())
    assert not h.hub.outbox


def test_relayed_traffic_is_written_to_chat_log(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    log_path = tmp_path / "logs" / "chat.txt"
    assert h.chatlog.start(log_path) is True

    async def run() -> None:
        await h.relay.on_local_message(LocalChatMessage(text="hello", sender="<b>Alice</b>", tag="General"))
        await h.relay.on_discord_message(h.discord_message("hey"))

    asyncio.run(run())
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("[Eco] (") and lines[0].endswith(") Alice: hello")
    assert lines[1].startswith("[Discord] (") and lines[1].endswith(") carol: hey")


def test_send_message_reports_lookup_failures(tmp_path: Path) -> None:
    h = Harness(tmp_path)

    async def run() -> list[str]:
        return [
            await h.relay.send_message("x", "general", "Unknown"),
            await h.relay.send_message("x", "nowhere", "Eco Guild"),
            await h.relay.send_message("x", "general", "eco guild"),
        ]

    assert asyncio.run(run()) == [
        "No guild of that name found",
        "No channel of that name or ID found in that guild",
        "Message sent successfully!",
    ]


def test_send_message_respects_permissions_and_errors(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.general.permissions = StubPermissions(send=False)
    assert asyncio.run(h.relay.send_message_to_channel("x", h.general)) == (
        "Missing permission to send messages in that channel"
    )

    h.general.permissions = StubPermissions()
    h.general.send_error = http_error()
    result = asyncio.run(h.relay.send_message_to_channel("x", h.general))
    assert result.startswith("Failed to send message:")
    assert log_events(h.store, "relay.send_failed")

    h.client.closed = True
    assert asyncio.run(h.relay.send_message("x", "general", "Eco Guild")) == "No discord client"


def test_long_messages_are_chunked(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    asyncio.run(h.relay.send_message_to_channel("a" * 4500, h.general))
    assert [len(m.content) for m in h.general.sent] == [2000, 2000, 500]


def test_send_as_user_uses_link_policy(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.store.data["config"]["chat_channel_links"][0]["allow_user_mentions"] = False
    result = asyncio.run(h.relay.send_message_as_user("hi @bob", "Alice", "general", "Eco Guild"))
    assert result == "Message sent successfully!"
    assert h.general.sent[0].content == "**Alice**: hi @bob"


def test_player_default_channel(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    assert h.relay.default_channel_for_player("alice") is None
    assert asyncio.run(h.relay.send_message_to_default_channel("hi", "alice")) == (
        "No default channel set for that player"
    )

    h.registry.set_default_channel_for_player("alice", "Eco Guild", "general")
    assert h.relay.default_channel_for_player("alice") is h.general
    assert asyncio.run(h.relay.send_message_to_default_channel("hi @bob", "alice")) == "Message sent successfully!"
    assert h.general.sent[0].content == "**alice**: hi <@2>"
