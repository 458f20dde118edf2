"""Flask application receiving Telegram updates and gateway callbacks."""
from __future__ import annotations

import logging
from threading import Thread
from typing import TYPE_CHECKING, Callable, Dict, Optional

from flask import Flask, jsonify, request

if TYPE_CHECKING:
    from .handlers import BotApp

LOGGER = logging.getLogger(__name__)

Dispatcher = Callable[[Dict], None]


def _background(bot_app: "BotApp") -> Dispatcher:
    def dispatch(update: Dict) -> None:
        Thread(target=bot_app.process_update, args=(update,), daemon=True).start()

    return dispatch


def create_app(bot_app: "BotApp", token: str, dispatch: Optional[Dispatcher] = None) -> Flask:
    """Build the webhook server.

    Telegram updates are acknowledged immediately and processed by
    ``dispatch`` (a daemon thread per update by default). Gateway callbacks
    are processed inline because the response code tells the gateway
    whether to retry.
    """
    app = Flask(__name__)
    dispatch = dispatch or _background(bot_app)

    @app.route(f"/bot{token}", methods=["POST"])
    def telegram_update():
        update = request.get_json(force=True, silent=True)
        if isinstance(update, dict):
            dispatch(update)
        else:
            LOGGER.warning("ignoring malformed telegram update")
        return jsonify({"ok": True})

    @app.route("/webhook", methods=["POST"])
    def payment_callback():
        payload = request.get_json(force=True, silent=True)
        LOGGER.info("payment callback received for invoice %s", (payload or {}).get("id") if isinstance(payload, dict) else None)
        status, body = bot_app.handle_payment_callback(payload)
        return jsonify(body), status

    @app.route("/", methods=["GET", "HEAD"])
    def health():
        return "Bot is running", 200

    return app
