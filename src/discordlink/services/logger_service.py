from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from discordlink.storage import MessagePackStore

MAX_LOG_ROWS = 2000

LogRow = dict[str, object]


class LoggerService:
    """Status-report stream: rows kept in the store, echoed to stdout, fanned out to listeners."""

    def __init__(self, store: MessagePackStore, *, verbose: bool = False) -> None:
        self.store = store
        self.verbose = verbose
        self._listeners: list[Callable[[LogRow], None]] = []

    def subscribe(self, listener: Callable[[LogRow], None]) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[LogRow], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def log(self, event: str, **data: object) -> None:
        self._emit("info", event, data)

    def error(self, event: str, **data: object) -> None:
        self._emit("error", event, data)

    def debug(self, event: str, **data: object) -> None:
        # Per-message tracing; far too chatty unless DEBUG is on.
        if self.verbose:
            self._emit("debug", event, data)

    def _emit(self, level: str, event: str, data: dict[str, object]) -> None:
        row: LogRow = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "data": data,
        }
        rows = self.store.data.setdefault("logs", [])
        rows.append(row)
        overflow = len(rows) - MAX_LOG_ROWS
        if overflow > 0:
            del rows[:overflow]
        self.store.touch()
        marker = "" if level == "info" else f"{level.upper()} "
        print(f"[{row['ts']}] {marker}{event} {data}")
        for listener in list(self._listeners):
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue
