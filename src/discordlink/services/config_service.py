from __future__ import annotations

import copy
from typing import Any, Callable

from discordlink.config import Settings
from discordlink.services.link_registry import ChannelLinkRegistry
from discordlink.services.logger_service import LoggerService
from discordlink.storage import DEFAULT_STORE

CONFIG_EVENTS = ("token_changed", "chatlog_toggled", "chatlog_path_changed", "links_changed")
LINK_KEYS = ("chat_channel_links", "status_channels", "player_configs")


class ConfigService:
    def __init__(self, settings: Settings, registry: ChannelLinkRegistry, logger: LoggerService) -> None:
        self.settings = settings
        self.registry = registry
        self.logger = logger
        self._listeners: dict[str, list[Callable[[], Any]]] = {name: [] for name in CONFIG_EVENTS}
        self._previous: dict[str, Any] = {}

    def subscribe(self, event: str, listener: Callable[[], Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown config event: {event}")
        self._listeners[event].append(listener)

    def snapshot(self) -> None:
        self._previous = copy.deepcopy(self.registry.root())

    def current_token(self) -> str:
        override = str(self.registry.setting("bot_token", "") or "").strip()
        return override or self.settings.discord_token

    def apply(self) -> bool:
        """Process an edit of the configuration document.

        Returns True when the document needed no correction. When a correction
        was written, the owner is expected to call ``apply`` again after saving.
        """
        root = self.registry.root()
        previous = self._previous
        correction_made = False
        fired: list[str] = []

        previous_token = str(previous.get("bot_token", "") or "").strip() or self.settings.discord_token
        if previous and self.current_token() != previous_token:
            self.logger.log("config.token_changed", message="Discord token changed, reinitialising client.")
            fired.append("token_changed")

        for kind, guild, original, corrected in self.registry.normalize_external_channels():
            correction_made = True
            self.logger.log(
                "config.channel_corrected",
                message=f'Corrected Discord channel name in {kind} with Guild "{guild}" from "{original}" to "{corrected}"',
            )

        if previous and bool(root.get("log_chat")) != bool(previous.get("log_chat")):
            self.logger.log("config.chatlog_toggled", enabled=bool(root.get("log_chat")))
            fired.append("chatlog_toggled")
        elif previous and root.get("chatlog_path") != previous.get("chatlog_path"):
            self.logger.log("config.chatlog_path_changed", path=str(root.get("chatlog_path") or ""))
            fired.append("chatlog_path_changed")

        defaults = DEFAULT_STORE["config"]
        for key in ("eco_command_channel", "invite_message"):
            if not str(root.get(key) or ""):
                root[key] = defaults[key]
                correction_made = True
                self.logger.log("config.default_restored", key=key)

        if previous and any(root.get(key) != previous.get(key) for key in LINK_KEYS):
            fired.append("links_changed")

        if correction_made:
            self.registry.store.touch()
        self.snapshot()
        for event in fired:
            self._notify(event)
        return not correction_made

    def _notify(self, event: str) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("config.listener_failed", config_event=event, error=str(exc)[:300])
