"""Confirmation messages for buyers, the admin and the sales group."""
from __future__ import annotations

import logging
from typing import Optional

from .config import Settings
from .formatting import PRETTY_LINE, censor_balance, censor_username, escape_html, format_rupiah
from .telegram import TelegramAPIError, TelegramBot
from .vpn_api import protocol_name

LOGGER = logging.getLogger(__name__)


class Notifier:
    """Sends notifications; delivery failures are logged, never raised."""

    def __init__(self, bot: TelegramBot, settings: Settings) -> None:
        self.bot = bot
        self.settings = settings

    def _send(self, chat_id, text: str, *, message_thread_id: Optional[int] = None) -> bool:
        try:
            self.bot.send_message(chat_id, text, parse_mode="HTML", message_thread_id=message_thread_id)
        except TelegramAPIError as exc:
            LOGGER.warning("failed to send notification to %s: %s", chat_id, exc)
            return False
        return True

    def notify_group(self, text: str) -> bool:
        if not self.settings.group_notifications_enabled:
            return False
        return self._send(self.settings.group_chat_id, text, message_thread_id=self.settings.group_topic_id)

    # ------------------------------------------------------------------
    def topup_success(self, user_id: str, username: Optional[str], amount: int, new_balance: int) -> None:
        self._send(
            user_id,
            "✅ <b>Top-up Successful</b>\n"
            f"{PRETTY_LINE}\n"
            f"<b>Amount:</b> {format_rupiah(amount)}\n"
            f"<b>New balance:</b> {format_rupiah(new_balance)}\n"
            f"{PRETTY_LINE}",
        )
        self._send(
            self.settings.admin_id,
            "💰 <b>New Top-up</b>\n"
            f"<b>User:</b> @{escape_html(username or f'user{user_id}')} (<code>{escape_html(user_id)}</code>)\n"
            f"<b>Amount:</b> {format_rupiah(amount)}",
        )
        self.notify_group(
            "✅ <b>Balance Top-up</b>\n"
            f"{PRETTY_LINE}\n"
            f"👤 <b>User:</b> {escape_html(censor_username(username or f'user{user_id}'))} (<code>{escape_html(user_id)}</code>)\n"
            f"💰 <b>Amount:</b> {censor_balance(amount)}\n"
            f"{PRETTY_LINE}"
        )

    def balance_adjusted(self, user_id: str, amount: int, new_balance: int) -> None:
        verb = "added to" if amount > 0 else "deducted from"
        self._send(
            user_id,
            f"💰 <b>{format_rupiah(abs(amount))}</b> was {verb} your balance by an admin.\n"
            f"<b>New balance:</b> {format_rupiah(new_balance)}",
        )

    def vpn_purchase(self, user_id: str, username: Optional[str], server_name: str, protocol: str, account: str, price: int) -> None:
        self.notify_group(
            "🛒 <b>New Account Purchase</b>\n"
            f"{PRETTY_LINE}\n"
            f"👤 <b>Buyer:</b> {escape_html(censor_username(username or f'user{user_id}'))} (<code>{escape_html(user_id)}</code>)\n"
            f"🗄️ <b>Server:</b> {escape_html(server_name)}\n"
            f"🛡️ <b>Protocol:</b> {escape_html(protocol_name(protocol))}\n"
            f"🤵 <b>Username:</b> <code>{escape_html(account)}</code>\n"
            f"💸 <b>Price:</b> {censor_balance(price)}\n"
            f"{PRETTY_LINE}"
        )

    def vpn_renewal(self, user_id: str, username: Optional[str], server_name: str, protocol: str, account: str, price: int) -> None:
        self.notify_group(
            "🔄 <b>Account Renewal</b>\n"
            f"{PRETTY_LINE}\n"
            f"👤 <b>Customer:</b> {escape_html(censor_username(username or f'user{user_id}'))} (<code>{escape_html(user_id)}</code>)\n"
            f"🗄️ <b>Server:</b> {escape_html(server_name)}\n"
            f"🛡️ <b>Protocol:</b> {escape_html(protocol_name(protocol))}\n"
            f"🤵 <b>Username:</b> <code>{escape_html(account)}</code>\n"
            f"💸 <b>Cost:</b> {censor_balance(price)}\n"
            f"{PRETTY_LINE}"
        )
