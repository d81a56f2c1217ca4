from __future__ import annotations

import asyncio
import collections
import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, TypeVar

from discordlink.models import LocalChatMessage, PresenceEvent
from discordlink.services.logger_service import LoggerService

T = TypeVar("T")
Listener = Callable[[T], Awaitable[None]]

# Lines kept for inspection when no game-side sink is wired.
OUTBOX_LIMIT = 200


@dataclass(frozen=True)
class RelayIdentity:
    """Synthetic local chat participant that speaks for Discord users."""

    name: str
    steam_id: str = "DiscordLinkSteam"
    slg_id: str = "DiscordLinkSlg"


class EventBus(Generic[T]):
    def __init__(self, name: str, logger: LoggerService) -> None:
        self.name = name
        self.logger = logger
        self._listeners: list[Listener[T]] = []

    def subscribe(self, listener: Listener[T]) -> bool:
        if listener in self._listeners:
            return False
        self._listeners.append(listener)
        return True

    def unsubscribe(self, listener: Listener[T]) -> bool:
        if listener not in self._listeners:
            return False
        self._listeners.remove(listener)
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def publish(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as exc:  # noqa: BLE001
                self.logger.error("bus.listener_failed", bus=self.name, error=str(exc)[:300])


class LocalChatHub:
    """In-process adapter between the game's chat system and the relay.

    The game server pushes chat lines from its own thread with ``push``; they are
    handed to the bot's event loop. Text going the other way is delivered through
    ``sink`` (``sink(identity_name, channel, text)``).
    """

    def __init__(
        self,
        logger: LoggerService,
        *,
        sink: Callable[[str, str, str], None] | None = None,
        user_directory: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self.logger = logger
        self.messages: EventBus[LocalChatMessage] = EventBus("local-chat", logger)
        self._sink = sink
        self._user_directory = user_directory
        self._loop: asyncio.AbstractEventLoop | None = None
        self._users: dict[str, RelayIdentity] = {}
        self.outbox: collections.deque[tuple[str, str, str]] = collections.deque(maxlen=OUTBOX_LIMIT)
        self._online: set[str] = set()
        self._online_lock = threading.Lock()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def push(self, message: LocalChatMessage) -> concurrent.futures.Future[None] | None:
        """Thread-safe entry point for the game server's chat callback."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self.logger.debug("local_chat.dropped_unbound", tag=message.tag)
            return None
        return asyncio.run_coroutine_threadsafe(self.messages.publish(message), loop)

    def notify_presence(self, event: PresenceEvent, username: str = "") -> concurrent.futures.Future[None] | None:
        if username:
            with self._online_lock:
                if event is PresenceEvent.LOGOUT:
                    self._online.discard(username)
                else:
                    self._online.add(username)
        return self.push(LocalChatMessage(text=username, sender="", tag="", is_system=True, presence=event))

    def online_players(self) -> list[str]:
        with self._online_lock:
            return sorted(self._online)

    def get_or_create_user(self, name: str) -> RelayIdentity:
        user = self._users.get(name)
        if user is None:
            user = RelayIdentity(name=name)
            self._users[name] = user
        return user

    def send_as(self, identity: RelayIdentity, channel: str, text: str) -> None:
        if self._sink is None:
            self.logger.debug("local_chat.no_sink", channel=channel)
            self.outbox.append((identity.name, channel, text))
            return
        self._sink(identity.name, channel, text)

    def known_usernames(self) -> set[str]:
        if self._user_directory is None:
            return set(self._users) | set(self.online_players())
        return {str(name) for name in self._user_directory()}
