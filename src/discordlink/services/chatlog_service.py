from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import aiofiles

from discordlink.services.logger_service import LoggerService
from discordlink.services.mention_resolver import strip_tags


class ChatLogService:
    def __init__(self, logger: LoggerService) -> None:
        self.logger = logger
        self.path: Path | None = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.path is not None

    def start(self, path: str | Path) -> bool:
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.touch(exist_ok=True)
        except OSError as exc:
            self.logger.error("chatlog.start_failed", path=str(target), error=str(exc)[:300])
            self.path = None
            return False
        self.path = target
        self.logger.log("chatlog.started", path=str(target))
        return True

    def stop(self) -> None:
        if self.path is not None:
            self.logger.log("chatlog.stopped", path=str(self.path))
        self.path = None

    def restart(self, path: str | Path) -> bool:
        self.stop()
        return self.start(path)

    def format_line(self, direction: str, sender: str, text: str, *, now: datetime | None = None) -> str:
        stamp = (now or datetime.now()).strftime("%m/%d/%Y:%H:%M")
        return f"[{direction}] ({stamp}) {strip_tags(sender)}: {strip_tags(text)}"

    async def write(self, direction: str, sender: str, text: str) -> None:
        path = self.path
        if path is None:
            return
        line = self.format_line(direction, sender, text)
        try:
            async with self._lock:
                async with aiofiles.open(path, "a", encoding="utf-8") as f:
                    await f.write(line + "\n")
        except OSError as exc:
            self.logger.error("chatlog.write_failed", path=str(path), error=str(exc)[:300])
