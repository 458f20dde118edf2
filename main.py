"""Application entrypoint.

Running ``python main.py`` registers the Telegram webhook and serves the
Flask application that receives Telegram updates and payment callbacks.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

from vpn_store.config import ConfigError, Settings, load_settings
from vpn_store.handlers import BotApp
from vpn_store.telegram import TelegramAPIError
from vpn_store.webhook import create_app

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGGER = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / "bot.log", mode="a", encoding="utf-8"),
        ],
    )


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        LOGGER.error("FATAL: %s", exc)
        return 1
    configure_logging(settings)

    bot_app = BotApp(settings)
    try:
        bot_app.bot.set_webhook(f"{settings.webhook_url}/bot{settings.bot_token}")
    except TelegramAPIError as exc:
        LOGGER.error("failed to register webhook: %s", exc)
        return 1

    app = create_app(bot_app, settings.bot_token)
    LOGGER.info('bot "%s" started in webhook mode on port %s', settings.store_name, settings.webhook_port)
    try:
        app.run(host="0.0.0.0", port=settings.webhook_port)
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        LOGGER.info("exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
