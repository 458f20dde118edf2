"""Shared fixtures: real stores under ``tmp_path``, mocked network clients."""
import itertools
from unittest.mock import MagicMock

import pytest

from vpn_store.config import Settings
from vpn_store.database import TransactionLog
from vpn_store.handlers import BotApp
from vpn_store.servers import ServerStore
from vpn_store.userstore import UserStore

ADMIN_ID = "1000"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bot_token="123:ABC",
        admin_id=ADMIN_ID,
        webhook_url="https://bot.example.com",
        payment_base_url="https://pay.example.com",
        payment_username="store",
        payment_api_token="secret",
        db_path=str(tmp_path / "database.json"),
        servers_dir=str(tmp_path / "servers"),
        sqlite_path=":memory:",
        log_dir=str(tmp_path / "logs"),
        broadcast_delay=0,
    )


@pytest.fixture
def bot():
    mock = MagicMock()
    counter = itertools.count(500)
    mock.send_message.side_effect = lambda *args, **kwargs: {"message_id": next(counter)}
    return mock


@pytest.fixture
def users(settings):
    return UserStore(settings.db_path, admin_id=settings.admin_id)


@pytest.fixture
def servers(settings):
    return ServerStore(settings.servers_dir)


@pytest.fixture
def log():
    return TransactionLog.open(":memory:")


@pytest.fixture
def payment():
    return MagicMock()


@pytest.fixture
def vpn_client():
    return MagicMock()


@pytest.fixture
def app(settings, bot, users, servers, log, payment, vpn_client):
    return BotApp(
        settings,
        bot=bot,
        users=users,
        servers=servers,
        log=log,
        payment=payment,
        vpn_client_factory=lambda server: vpn_client,
    )


def text_message(user_id, text, *, username="buyer", message_id=1, chat_type="private"):
    return {
        "message": {
            "message_id": message_id,
            "from": {"id": int(user_id), "username": username},
            "chat": {"id": int(user_id), "type": chat_type},
            "text": text,
        }
    }


def button_press(user_id, data, *, username="buyer", message_id=42):
    return {
        "callback_query": {
            "id": "cb-1",
            "from": {"id": int(user_id), "username": username},
            "message": {"message_id": message_id, "chat": {"id": int(user_id)}},
            "data": data,
        }
    }


def sent_texts(bot):
    """Texts of every message sent or edited, in call order."""

    texts = []
    for name, args, kwargs in bot.mock_calls:
        if name == "send_message":
            texts.append(args[1])
        elif name == "edit_message_text":
            texts.append(args[2])
    return texts


def last_text(bot):
    texts = sent_texts(bot)
    return texts[-1] if texts else None
