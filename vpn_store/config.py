"""Configuration loader for the VPN store bot.

Configuration is loaded from environment variables or a ``.env`` file read
with python-dotenv. Environment variables take precedence over the file.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

REQUIRED_VARIABLES = (
    "BOT_TOKEN",
    "ADMIN_USER_ID",
    "WEBHOOK_URL",
    "PAYMENT_GATEWAY_BASE_URL",
    "PAYMENT_GATEWAY_USERNAME",
    "PAYMENT_GATEWAY_API_TOKEN",
)


class ConfigError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


@dataclass
class Settings:
    """Configuration values required by the application."""

    bot_token: str
    admin_id: str
    webhook_url: str
    payment_base_url: str
    payment_username: str
    payment_api_token: str
    store_name: str = "VPN STORE"
    webhook_port: int = 3000
    group_chat_id: Optional[str] = None
    group_topic_id: Optional[int] = None
    db_path: str = "database.json"
    servers_dir: str = "servers"
    sqlite_path: str = "transactions.sqlite3"
    log_dir: str = "logs"
    log_level: str = "INFO"
    broadcast_delay: float = 0.1

    @property
    def group_notifications_enabled(self) -> bool:
        return bool(self.group_chat_id)


def _parse_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Load settings from environment variables.

    Parameters
    ----------
    dotenv_path : str, optional
        Explicit ``.env`` location. Defaults to ``DOTENV_PATH`` or ``.env``
        in the current directory.

    Returns
    -------
    Settings
        The populated configuration dataclass. Raises ``ConfigError`` listing
        every missing required variable.
    """
    env_path = Path(dotenv_path or os.environ.get("DOTENV_PATH") or ".env")
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)

    missing: List[str] = [name for name in REQUIRED_VARIABLES if not os.environ.get(name)]
    if missing:
        raise ConfigError("missing required settings: " + ", ".join(missing))

    admin_id = os.environ["ADMIN_USER_ID"].strip()
    if not admin_id.isdigit():
        raise ConfigError("ADMIN_USER_ID must be a numeric Telegram id")

    port = _parse_int("WEBHOOK_PORT", os.environ.get("WEBHOOK_PORT")) or 3000
    topic_id = _parse_int("GROUP_NOTIFICATION_TOPIC_ID", os.environ.get("GROUP_NOTIFICATION_TOPIC_ID"))

    delay_raw = os.environ.get("BROADCAST_DELAY", "0.1")
    try:
        broadcast_delay = float(delay_raw)
    except ValueError as exc:
        raise ConfigError("BROADCAST_DELAY must be a number") from exc

    return Settings(
        bot_token=os.environ["BOT_TOKEN"],
        admin_id=admin_id,
        webhook_url=os.environ["WEBHOOK_URL"].rstrip("/"),
        payment_base_url=os.environ["PAYMENT_GATEWAY_BASE_URL"],
        payment_username=os.environ["PAYMENT_GATEWAY_USERNAME"],
        payment_api_token=os.environ["PAYMENT_GATEWAY_API_TOKEN"],
        store_name=os.environ.get("STORE_NAME") or "VPN STORE",
        webhook_port=port,
        group_chat_id=os.environ.get("GROUP_NOTIFICATION_CHAT_ID") or None,
        group_topic_id=topic_id,
        db_path=os.environ.get("DB_PATH", "database.json"),
        servers_dir=os.environ.get("SERVERS_DIR", "servers"),
        sqlite_path=os.environ.get("SQLITE_PATH", "transactions.sqlite3"),
        log_dir=os.environ.get("LOG_DIR", "logs"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        broadcast_delay=broadcast_delay,
    )
