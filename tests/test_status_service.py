from __future__ import annotations

import asyncio
from pathlib import Path

from discordlink.models import ServerStatus, StatusComponent
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.status_service import (
    StatusService,
    build_status_embed,
    embed_to_text,
    render_status,
)

from discord_stubs import (
    StubChannel,
    StubClient,
    StubGuild,
    StubMessage,
    StubPermissions,
    StubUser,
    http_error,
    log_events,
    make_store,
)

LINK_ID = "Eco Guild - status (Eco Status)"


def _status() -> ServerStatus:
    return ServerStatus(name="Eco World", address="1.2.3.4", player_count=2, players=["alice", "bob"])


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.store, logger = make_store(tmp_path)
        self.store.data["config"]["status_channels"] = [{"discord_guild": "Eco Guild", "discord_channel": "status"}]
        self.channel = StubChannel(11, "status")
        self.guild = StubGuild(1, "Eco Guild", channels=[self.channel])
        self.client = StubClient([self.guild])
        self.service = StatusService(ChannelLinkRegistry(self.store), logger, self.client, _status)

    def refresh(self) -> dict[str, str]:
        return asyncio.run(self.service.refresh_all())


def test_status_message_is_created_once_then_edited(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    assert h.refresh() == {LINK_ID: "created"}
    assert h.refresh() == {LINK_ID: "edited"}
    assert len(h.channel.sent) == 1
    message = h.channel.sent[0]
    assert len(message.edits) == 1
    assert message.embeds[0].title == "Live Server Status"
    assert list(h.service.cached_message_ids().values()) == [message.id]


def test_deleted_status_message_is_replaced(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.refresh()
    h.channel.messages.clear()

    assert h.refresh() == {LINK_ID: "created"}
    assert len(h.channel.sent) == 2
    assert list(h.service.cached_message_ids().values()) == [h.channel.sent[1].id]
    assert log_events(h.store, "status.message_missing")


def test_transient_fetch_failure_keeps_cached_id(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.refresh()
    cached = h.service.cached_message_ids()
    h.channel.fetch_error = http_error(503, "Service Unavailable")

    assert h.refresh() == {LINK_ID: "failed"}
    assert h.service.cached_message_ids() == cached
    assert len(h.channel.sent) == 1


def test_existing_status_message_is_adopted(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    old = StubMessage(author=h.guild.me, content="", embed=build_status_embed(_status(), StatusComponent.NAME))
    foreign = StubMessage(author=StubUser(3, "mallory"), content="**Live Server Status**")
    h.channel.messages.extend([old, foreign])

    assert h.refresh() == {LINK_ID: "edited"}
    assert h.channel.sent == []
    assert list(h.service.cached_message_ids().values()) == [old.id]
    assert len(old.edits) == 1
    assert foreign.edits == []


def test_missing_permissions_skip_channel(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.channel.permissions = StubPermissions(history=False)
    assert h.refresh() == {LINK_ID: "skipped"}

    h.channel.permissions = StubPermissions(send=False)
    assert h.refresh() == {LINK_ID: "skipped"}
    assert h.channel.sent == []


def test_status_falls_back_to_text_without_embed_permission(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.channel.permissions = StubPermissions(embeds=False)
    h.refresh()
    message = h.channel.sent[0]
    assert message.embeds == []
    assert message.content.startswith("**Live Server Status**\n**Eco World**")
    assert "**Players Online:** 2" in message.content


def test_unresolved_channel_and_cache_clear(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.refresh()

    async def run() -> None:
        await h.service.clear_cache()

    asyncio.run(run())
    assert h.service.cached_message_ids() == {}

    h.guild.text_channels.clear()
    h.guild.channels.clear()
    assert h.refresh() == {LINK_ID: "unresolved"}


def test_components_select_embed_fields() -> None:
    embed = build_status_embed(_status(), StatusComponent.NAME)
    assert embed.description == "**Eco World**"
    assert embed.fields == []

    full = build_status_embed(_status(), StatusComponent.ADDRESS | StatusComponent.PLAYER_LIST)
    assert [f.name for f in full.fields] == ["Address", "Online Players"]
    assert full.fields[1].value == "alice\nbob"

    text = embed_to_text(full)
    assert text.splitlines()[0] == "**Live Server Status**"
    assert "**Address:** 1.2.3.4" in text

    payload = render_status(_status(), StatusComponent.NAME, embeds_allowed=True)
    assert payload["content"] is None
    assert payload["embed"].title == "Live Server Status"


def test_single_channel_refresh_shares_the_cache(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    config = h.service.registry.status_channels()[0]

    async def run() -> list[str]:
        return [await h.service.refresh_channel(config), (await h.service.refresh_all())[LINK_ID]]

    assert asyncio.run(run()) == ["created", "edited"]
    assert len(h.channel.sent) == 1
