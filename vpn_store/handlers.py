"""High level bot application logic.

:class:`BotApp` owns the stores and clients, turns raw Telegram updates into
:class:`~vpn_store.conversation.Interaction` objects and routes them. The
flows themselves live in :mod:`vpn_store.topup`, :mod:`vpn_store.vpn` and
:mod:`vpn_store.admin`.
"""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from .admin import AdminHandlers
from .callbacks import Action, decode
from .config import Settings
from .conversation import (
    ADMIN_KINDS,
    KIND_CREATE_VPN,
    KIND_TOPUP_AMOUNT,
    ConversationRegistry,
    Interaction,
)
from .database import TransactionLog
from .formatting import PRETTY_LINE, escape_html, format_rupiah, keyboard
from .notifications import Notifier
from .payment import CallbackRejected, PaymentGatewayClient, parse_callback
from .servers import ServerStore
from .telegram import TelegramAPIError, TelegramBot
from .topup import TopupHandlers
from .userstore import ROLE_ADMIN, TX_TOPUP_GATEWAY, UserNotFoundError, UserStore
from .vpn import VPNHandlers
from .vpn_api import VPNClient

LOGGER = logging.getLogger(__name__)


def _error(message: str) -> Dict[str, str]:
    return {"status": "error", "message": message}


class BotApp:
    """Telegram storefront bot; every dependency can be injected for tests."""

    def __init__(
        self,
        settings: Settings,
        *,
        bot: Optional[TelegramBot] = None,
        users: Optional[UserStore] = None,
        servers: Optional[ServerStore] = None,
        log: Optional[TransactionLog] = None,
        payment: Optional[PaymentGatewayClient] = None,
        vpn_client_factory: Optional[Callable[[Dict[str, Any]], VPNClient]] = None,
        conversations: Optional[ConversationRegistry] = None,
    ) -> None:
        self.settings = settings
        self.bot = bot if bot is not None else TelegramBot(settings.bot_token)
        self.users = users if users is not None else UserStore(settings.db_path, admin_id=settings.admin_id)
        self.servers = servers if servers is not None else ServerStore(settings.servers_dir)
        self.log = log if log is not None else TransactionLog.open(settings.sqlite_path)
        if payment is None:
            payment = PaymentGatewayClient(
                settings.payment_base_url,
                settings.payment_username,
                settings.payment_api_token,
            )
        self.payment = payment
        self.make_vpn_client = vpn_client_factory or VPNClient
        self.conversations = conversations if conversations is not None else ConversationRegistry()
        self.notifier = Notifier(self.bot, settings)
        self.started_at = time.monotonic()

        self.topup = TopupHandlers(self)
        self.vpn = VPNHandlers(self)
        self.admin = AdminHandlers(self)
        self._routes: Dict[Action, Callable[..., None]] = {
            Action.MAIN_MENU: self.show_main_menu,
            Action.VPN_MENU: self.vpn.show_menu,
            Action.TOPUP_MENU: self.topup.show_menu,
            Action.VPN_SELECT_SERVER: self.vpn.select_server,
            Action.VPN_SELECT_PROTOCOL: self.vpn.select_protocol,
            Action.VPN_ENTER_USERNAME: self.vpn.prompt_username,
            Action.VPN_MY_ACCOUNTS: self.vpn.my_accounts,
            Action.VPN_RENEW_SELECT: self.vpn.select_renewal,
            Action.VPN_RENEW_CONFIRM: self.vpn.confirm_renewal,
            Action.VPN_RENEW_EXECUTE: self.vpn.execute_renewal,
            Action.ADMIN_PANEL: self.admin.show_panel,
            Action.ADMIN_USERS: self.admin.users_menu,
            Action.ADMIN_ADD_BALANCE: self.admin.prompt_add_balance,
            Action.ADMIN_SET_ROLE: self.admin.prompt_set_role,
            Action.ADMIN_SERVERS: self.admin.servers_menu,
            Action.ADMIN_ADD_SERVER: self.admin.prompt_add_server,
            Action.ADMIN_EDIT_SELECT: self.admin.select_server_to_edit,
            Action.ADMIN_DELETE_SELECT: self.admin.select_server_to_delete,
            Action.ADMIN_EDIT_SERVER: self.admin.edit_server_details,
            Action.ADMIN_EDIT_PROPERTY: self.admin.prompt_edit_property,
            Action.ADMIN_EDIT_PRICE: self.admin.prompt_edit_price,
            Action.ADMIN_DELETE_CONFIRM: self.admin.confirm_delete,
            Action.ADMIN_DELETE_EXECUTE: self.admin.execute_delete,
            Action.ADMIN_BROADCAST: self.admin.prompt_broadcast,
            Action.ADMIN_TRANSACTIONS: self.admin.view_transactions,
        }

    # ------------------------------------------------------------------
    # update entry points
    # ------------------------------------------------------------------
    def process_update(self, update: Dict) -> None:
        try:
            if "message" in update:
                self._handle_message(update["message"])
            elif "callback_query" in update:
                self._handle_callback(update["callback_query"])
        except Exception as exc:
            LOGGER.exception("unhandled error while processing update: %s", exc)

    # ------------------------------------------------------------------
    def _handle_message(self, message: Dict) -> None:
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if chat.get("type") != "private" or "id" not in sender:
            return
        user_id = str(sender["id"])
        interaction = Interaction(user_id=user_id, chat_id=chat["id"], username=sender.get("username"))
        text = message.get("text") or ""

        with self.conversations.user_lock(user_id):
            is_new = self.users.ensure_user(user_id, interaction.username)
            pending = self.conversations.current(user_id)
            if pending is not None:
                if pending.kind in ADMIN_KINDS and not self.users.is_admin(user_id):
                    LOGGER.warning("dropping %s input from non-admin %s", pending.kind, user_id)
                    self.conversations.cancel(user_id)
                else:
                    self.delete_quietly(chat["id"], message.get("message_id"))
                    prompt = replace(interaction, chat_id=pending.chat_id, message_id=pending.message_id)
                    if pending.kind == KIND_TOPUP_AMOUNT:
                        self.topup.process_amount(prompt, pending, text)
                    elif pending.kind in ADMIN_KINDS:
                        self.admin.process_input(prompt, pending, text)
                    elif pending.kind == KIND_CREATE_VPN:
                        self.vpn.process_username(prompt, pending, text)
                    else:
                        LOGGER.warning("unknown pending action %s for user %s", pending.kind, user_id)
                        self.conversations.cancel(user_id)
                    return

            if text.startswith("/start"):
                self.start(interaction, is_new=is_new)
            elif text.startswith("/admin") and self.users.is_admin(user_id):
                self.admin.show_panel(interaction)
            else:
                self.show_main_menu(interaction)

    # ------------------------------------------------------------------
    def _handle_callback(self, callback: Dict) -> None:
        try:
            self.bot.answer_callback_query(callback["id"])
        except TelegramAPIError as exc:
            LOGGER.warning("failed to answer callback query: %s", exc)

        sender = callback.get("from") or {}
        message = callback.get("message") or {}
        if "id" not in sender:
            return
        user_id = str(sender["id"])
        interaction = Interaction(
            user_id=user_id,
            chat_id=(message.get("chat") or {}).get("id", sender["id"]),
            message_id=message.get("message_id"),
            username=sender.get("username"),
        )
        data = callback.get("data")

        with self.conversations.user_lock(user_id):
            self.users.ensure_user(user_id, interaction.username)
            # Any button press abandons a pending text flow.
            self.conversations.cancel(user_id)
            decoded = decode(data)
            if decoded is None:
                LOGGER.warning("unhandled callback data %r from user %s", data, user_id)
                return
            if decoded.action.admin_only and not self.users.is_admin(user_id):
                LOGGER.warning("user %s attempted admin action %s", user_id, decoded.action.name)
                return
            self._routes[decoded.action](interaction, *decoded.args)

    # ------------------------------------------------------------------
    # payment gateway callback
    # ------------------------------------------------------------------
    def handle_payment_callback(self, payload: Any) -> Tuple[int, Dict[str, str]]:
        """Credit a paid invoice. Returns the HTTP status and JSON body."""

        try:
            paid = parse_callback(payload)
        except CallbackRejected as exc:
            LOGGER.warning("rejected payment callback: %s", exc)
            return 400, _error(str(exc))

        user = self.users.get_user(paid.user_id)
        if user is None:
            LOGGER.warning("payment callback for unknown user %s (invoice %s)", paid.user_id, paid.invoice_id)
            return 400, _error("User not found")
        try:
            result = self.users.update_balance(
                paid.user_id,
                paid.amount,
                TX_TOPUP_GATEWAY,
                {"invoice_id": paid.invoice_id},
                idempotency_key=paid.invoice_id,
            )
        except UserNotFoundError:
            return 400, _error("User not found")
        self.log.mark_invoice_paid(paid.invoice_id, paid.user_id, paid.amount)

        if not result.applied:
            return 200, {"status": "success", "message": "Duplicate callback ignored"}
        LOGGER.info("invoice %s credited %s to user %s", paid.invoice_id, paid.amount, paid.user_id)
        self.notifier.topup_success(paid.user_id, user.get("username"), paid.amount, result.new_balance)
        return 200, {"status": "success", "message": "Webhook processed"}

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------
    def render(
        self,
        interaction: Interaction,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        *,
        parse_mode: str = "HTML",
    ) -> Optional[int]:
        """Edit the interaction's message, or send a new one when there is none.

        Returns the id of the message that now shows ``text``.
        """
        if interaction.message_id is not None:
            try:
                self.bot.edit_message_text(
                    interaction.chat_id,
                    interaction.message_id,
                    text,
                    parse_mode=parse_mode,
                    reply_markup=reply_markup,
                )
                return interaction.message_id
            except TelegramAPIError as exc:
                LOGGER.debug("could not edit message %s, sending a new one: %s", interaction.message_id, exc)
        sent = self.bot.send_message(interaction.chat_id, text, parse_mode=parse_mode, reply_markup=reply_markup)
        return sent.get("message_id") if isinstance(sent, dict) else None

    def delete_quietly(self, chat_id: Any, message_id: Optional[int]) -> None:
        if message_id is None:
            return
        try:
            self.bot.delete_message(chat_id, message_id)
        except TelegramAPIError as exc:
            LOGGER.debug("could not delete message %s: %s", message_id, exc)

    def uptime(self) -> str:
        elapsed = int(time.monotonic() - self.started_at)
        return f"{elapsed // 3600}h {(elapsed % 3600) // 60}m"

    # ------------------------------------------------------------------
    # core menu
    # ------------------------------------------------------------------
    def start(self, interaction: Interaction, *, is_new: bool = False) -> None:
        if is_new:
            self.bot.send_message(interaction.chat_id, "Welcome! Your account has been created.")
        self.show_main_menu(interaction)

    def show_main_menu(self, interaction: Interaction) -> None:
        user = self.users.get_user(interaction.user_id) or {}
        text = (
            f"🛒 <b>{escape_html(self.settings.store_name)}</b>\n{PRETTY_LINE}\n"
            "<b>Bot Statistics:</b>\n"
            f"• 🗄️ Servers available: <b>{len(self.servers.list_all())}</b>\n"
            f"• ⏱️ Uptime: <b>{self.uptime()}</b>\n"
            f"{PRETTY_LINE}\n"
            "<b>Your Account:</b>\n"
            f"• 🆔 ID: <code>{escape_html(interaction.user_id)}</code>\n"
            f"• 👤 Username: @{escape_html(user.get('username') or 'none')}\n"
            f"• 💰 Balance: <b>{format_rupiah(user.get('balance', 0))}</b>\n"
            f"{PRETTY_LINE}\n"
            "Please choose a menu below:"
        )
        rows = [
            [
                {"text": "🛡️ VPN Menu", "callback_data": Action.VPN_MENU.encode()},
                {"text": "💳 Top Up Balance", "callback_data": Action.TOPUP_MENU.encode()},
            ]
        ]
        if user.get("role") == ROLE_ADMIN:
            rows.append([{"text": "👑 Admin Panel", "callback_data": Action.ADMIN_PANEL.encode()}])
        self.render(interaction, text, keyboard(*rows))
