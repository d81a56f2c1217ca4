from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_SETTINGS_PATH = Path("discordlink.txt")
DEFAULT_COMMAND_PREFIX = "?"
DEFAULT_RELAY_USER_NAME = "Discord"
DEFAULT_STATUS_INTERVAL_SEC = 300


@dataclass(frozen=True)
class Settings:
    discord_token: str
    command_prefix: str
    store_path: Path
    relay_user_name: str = DEFAULT_RELAY_USER_NAME
    status_interval_sec: int = DEFAULT_STATUS_INTERVAL_SEC
    debug: bool = False

    @staticmethod
    def load(path: Path = DEFAULT_SETTINGS_PATH) -> "Settings":
        values = _parse_settings_file(path)
        token = values.get("DISCORD_TOKEN", "").strip()
        command_prefix = values.get("COMMAND_PREFIX", "").strip() or DEFAULT_COMMAND_PREFIX
        store_path = Path(values.get("STORE_PATH", "data/discordlink.msgpack"))
        relay_user_name = values.get("RELAY_USER_NAME", "").strip() or DEFAULT_RELAY_USER_NAME
        try:
            status_interval_sec = max(30, int(values.get("STATUS_INTERVAL_SEC", DEFAULT_STATUS_INTERVAL_SEC)))
        except ValueError:
            status_interval_sec = DEFAULT_STATUS_INTERVAL_SEC
        debug = values.get("DEBUG", "").strip().lower() in ("1", "true", "yes", "on")
        if not token:
            raise RuntimeError(f"DISCORD_TOKEN is required in {path}.")
        return Settings(
            discord_token=token,
            command_prefix=command_prefix,
            store_path=store_path,
            relay_user_name=relay_user_name,
            status_interval_sec=status_interval_sec,
            debug=debug,
        )


def _parse_settings_file(path: Path) -> dict[str, str]:
    if not path.exists():
        raise RuntimeError(f"{path} not found. Copy discordlink.example.txt to {path} and fill values.")
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values
