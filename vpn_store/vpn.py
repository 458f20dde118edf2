"""Buying, listing and renewing VPN accounts."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from .callbacks import Action
from .conversation import KIND_CREATE_VPN, Interaction, PendingAction
from .formatting import PRETTY_LINE, back_button, escape_html, format_rupiah, keyboard
from .pricing import PERIOD_DAYS, days_left, extend_expiry, new_expiry, protocol_price, utc_now
from .userstore import TX_VPN_PURCHASE, TX_VPN_RENEWAL
from .validation import is_valid_vpn_username, sanitize_string
from .vpn_api import PROTOCOL_ORDER, VPNAPIError, protocol_name

if TYPE_CHECKING:
    from .handlers import BotApp

LOGGER = logging.getLogger(__name__)

USERNAME_PROMPT = (
    f"<b>Enter a Username</b>\n{PRETTY_LINE}\n"
    "Type the username you want for your VPN account.\n\n"
    "<b>(lowercase letters and digits only, 3 to 32 characters, no spaces)</b>"
)


def _back_to_vpn_menu() -> Dict[str, Any]:
    return keyboard([back_button("⬅️ Back", Action.VPN_MENU.encode())])


class VPNHandlers:
    def __init__(self, app: "BotApp") -> None:
        self.app = app

    # ------------------------------------------------------------------
    # menus
    # ------------------------------------------------------------------
    def show_menu(self, interaction: Interaction) -> None:
        text = (
            f"🛡️ <b>VPN Menu</b>\n{PRETTY_LINE}\n"
            "Choose one of the options below to manage your VPN services."
        )
        markup = keyboard(
            [{"text": "🛒 Buy a New VPN Account", "callback_data": Action.VPN_SELECT_SERVER.encode()}],
            [{"text": "🔄 Renew a VPN Account", "callback_data": Action.VPN_RENEW_SELECT.encode()}],
            [{"text": "📄 My VPN Accounts", "callback_data": Action.VPN_MY_ACCOUNTS.encode()}],
            [back_button("⬅️ Back", Action.MAIN_MENU.encode())],
        )
        self.app.render(interaction, text, markup)

    def select_server(self, interaction: Interaction) -> None:
        servers = self.app.servers.list_all()
        if not servers:
            self.app.render(interaction, "No servers are available at the moment.", _back_to_vpn_menu())
            return
        rows = [
            [{"text": server.get("name") or server["id"], "callback_data": Action.VPN_SELECT_PROTOCOL.encode(server["id"])}]
            for server in servers
        ]
        rows.append([back_button("⬅️ Back", Action.VPN_MENU.encode())])
        text = f"🛒 <b>Buy a New VPN Account</b>\n{PRETTY_LINE}\nChoose the server location you want:"
        self.app.render(interaction, text, keyboard(*rows))

    def select_protocol(self, interaction: Interaction, server_id: str) -> None:
        server = self.app.servers.get(server_id)
        if server is None:
            self.app.render(interaction, "❌ Server not found.", _back_to_vpn_menu())
            return
        rows = []
        for protocol in PROTOCOL_ORDER:
            price = protocol_price(server, protocol)
            if price is None:
                continue
            rows.append(
                [
                    {
                        "text": f"{protocol_name(protocol)} - {format_rupiah(price)}",
                        "callback_data": Action.VPN_ENTER_USERNAME.encode(server_id, protocol),
                    }
                ]
            )
        if not rows:
            self.app.render(interaction, "❌ This server has no active protocols yet.", _back_to_vpn_menu())
            return
        rows.append([back_button("⬅️ Back", Action.VPN_SELECT_SERVER.encode())])
        text = (
            f"<b>Choose a Protocol on {escape_html(server.get('name'))}</b>\n{PRETTY_LINE}\n"
            f"Prices are per {PERIOD_DAYS} days."
        )
        self.app.render(interaction, text, keyboard(*rows))

    # ------------------------------------------------------------------
    # purchase
    # ------------------------------------------------------------------
    def prompt_username(self, interaction: Interaction, server_id: str, protocol: str) -> None:
        cancel = keyboard([back_button("Cancel", Action.VPN_SELECT_PROTOCOL.encode(server_id))])
        message_id = self.app.render(interaction, USERNAME_PROMPT, cancel)
        self.app.conversations.begin(
            interaction.user_id,
            KIND_CREATE_VPN,
            chat_id=interaction.chat_id,
            message_id=message_id,
            step="username",
            data={"server_id": server_id, "protocol": protocol},
        )

    def process_username(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        """Provision an account, then charge for it.

        The balance is checked before calling the server and debited only
        after the server confirmed the account, so a failed call costs the
        buyer nothing.
        """
        app = self.app
        user_id = interaction.user_id
        server_id = pending.data.get("server_id")
        protocol = pending.data.get("protocol")
        username = sanitize_string(text, max_length=64)

        if not is_valid_vpn_username(username):
            cancel = keyboard([back_button("Cancel", Action.VPN_SELECT_PROTOCOL.encode(server_id))])
            app.render(interaction, "❌ Invalid username.\n\n" + USERNAME_PROMPT, cancel)
            return

        app.conversations.complete(user_id)
        server = app.servers.get(server_id)
        price = protocol_price(server, protocol)
        if server is None or price is None:
            LOGGER.warning("purchase of %s on %s aborted: no longer offered", protocol, server_id)
            app.render(interaction, "❌ This server or protocol is no longer available. The process was cancelled.", _back_to_vpn_menu())
            return

        user = app.users.get_user(user_id) or {}
        balance = int(user.get("balance", 0))
        if balance < price:
            app.render(
                interaction,
                "❌ <b>Insufficient balance.</b>\n\n"
                f"Required: <b>{format_rupiah(price)}</b>\n"
                f"Your balance: <b>{format_rupiah(balance)}</b>",
                keyboard(
                    [{"text": "💳 Top Up Balance", "callback_data": Action.TOPUP_MENU.encode()}],
                    [back_button("⬅️ Back", Action.VPN_MENU.encode())],
                ),
            )
            return

        app.render(interaction, "⏳ Creating your VPN account, please wait...")
        try:
            result = app.make_vpn_client(server).create_account(protocol, username)
        except VPNAPIError as exc:
            LOGGER.error("provisioning %s on %s for user %s failed: %s", protocol, server_id, user_id, exc)
            app.render(interaction, f"❌ <b>Failed to Create Account</b>\n\n{escape_html(exc)}", _back_to_vpn_menu())
            return

        now = utc_now()
        server_name = server.get("name") or server_id
        app.users.update_balance(
            user_id,
            -price,
            TX_VPN_PURCHASE,
            {"server": server_name, "server_id": server_id, "protocol": protocol, "username": username, "trx_id": result.trx_id},
        )
        app.log.record_vpn_purchase(
            idtrx=result.trx_id,
            telegram_id=user_id,
            buyer_username=interaction.username,
            server_id=server_id,
            server_name=server_name,
            protocol=protocol,
            username=username,
            password=result.password,
            price=price,
            duration_days=PERIOD_DAYS,
            purchase_date=now,
            expiry_date=new_expiry(now),
        )
        app.render(interaction, result.details, _back_to_vpn_menu())
        app.notifier.vpn_purchase(user_id, interaction.username, server_name, protocol, username, price)

    # ------------------------------------------------------------------
    # accounts and renewal
    # ------------------------------------------------------------------
    def my_accounts(self, interaction: Interaction) -> None:
        accounts = self.app.log.list_accounts(interaction.user_id)
        if not accounts:
            self.app.render(interaction, "You have no VPN accounts yet.", _back_to_vpn_menu())
            return
        now = utc_now()
        lines = ["📄 <b>My VPN Accounts</b>", PRETTY_LINE]
        for account in accounts:
            lines.extend(
                [
                    f"• Server: <b>{escape_html(account['server_name'])}</b>",
                    f"• User: <code>{escape_html(account['username'])}</code>",
                    f"• Protocol: <b>{escape_html(protocol_name(account['protocol']))}</b>",
                    f"• Days left: <b>{days_left(account['expiry_date'], now)}</b>",
                    PRETTY_LINE,
                ]
            )
        self.app.render(interaction, "\n".join(lines), _back_to_vpn_menu())

    def select_renewal(self, interaction: Interaction) -> None:
        accounts = self.app.log.list_accounts(interaction.user_id)
        if not accounts:
            self.app.render(interaction, "You have no VPN accounts to renew.", _back_to_vpn_menu())
            return
        now = utc_now()
        lines = [
            f"🔄 <b>Renew a VPN Account</b>\n{PRETTY_LINE}",
            "Choose the account you want to renew.\n",
        ]
        rows = []
        for account in accounts:
            lines.append(
                f"• <b>{escape_html(account['server_name'])}</b> / <code>{escape_html(account['username'])}</code>"
                f" ({days_left(account['expiry_date'], now)} days left)"
            )
            rows.append(
                [
                    {
                        "text": f"{account['server_name']} - {account['username']}",
                        "callback_data": Action.VPN_RENEW_CONFIRM.encode(account["id"]),
                    }
                ]
            )
        rows.append([back_button("⬅️ Back", Action.VPN_MENU.encode())])
        self.app.render(interaction, "\n".join(lines), keyboard(*rows))

    def _renewal_target(self, interaction: Interaction, account_id: str):
        """Resolve the account, its server and the renewal price, or explain why not."""

        account = None
        if account_id.isdigit():
            account = self.app.log.get_account(int(account_id), interaction.user_id)
        if account is None:
            self.app.render(interaction, "❌ Account not found.", _back_to_vpn_menu())
            return None
        server: Optional[Dict[str, Any]] = None
        if account.get("server_id"):
            server = self.app.servers.get(account["server_id"])
        if server is None:
            server = self.app.servers.find_by_name(account["server_name"])
        if server is None:
            self.app.render(interaction, "❌ The server for this account is no longer available.", _back_to_vpn_menu())
            return None
        price = protocol_price(server, account["protocol"])
        if price is None:
            self.app.render(interaction, "❌ This protocol is no longer offered on the server.", _back_to_vpn_menu())
            return None
        return account, server, price

    def confirm_renewal(self, interaction: Interaction, account_id: str) -> None:
        target = self._renewal_target(interaction, account_id)
        if target is None:
            return
        account, _server, price = target
        user = self.app.users.get_user(interaction.user_id) or {}
        text = (
            f"<b>Confirm Renewal</b>\n{PRETTY_LINE}\n"
            "You are about to renew:\n"
            f"• User: <code>{escape_html(account['username'])}</code>\n"
            f"• Server: <b>{escape_html(account['server_name'])}</b>\n"
            f"• Cost: <b>{format_rupiah(price)}</b>\n\n"
            f"Your current balance: <b>{format_rupiah(user.get('balance', 0))}</b>\n\n"
            "Are you sure?"
        )
        markup = keyboard(
            [{"text": "✅ Yes, renew now", "callback_data": Action.VPN_RENEW_EXECUTE.encode(account["id"])}],
            [back_button("Cancel", Action.VPN_RENEW_SELECT.encode())],
        )
        self.app.render(interaction, text, markup)

    def execute_renewal(self, interaction: Interaction, account_id: str) -> None:
        app = self.app
        target = self._renewal_target(interaction, account_id)
        if target is None:
            return
        account, server, price = target
        user = app.users.get_user(interaction.user_id) or {}
        if int(user.get("balance", 0)) < price:
            app.render(
                interaction,
                f"❌ <b>Insufficient balance.</b>\n\nRequired: <b>{format_rupiah(price)}</b>",
                _back_to_vpn_menu(),
            )
            return

        app.render(interaction, "⏳ Renewing the account, please wait...")
        try:
            app.make_vpn_client(server).renew_account(account["protocol"], account["username"])
        except VPNAPIError as exc:
            LOGGER.error("renewal of account %s failed: %s", account["id"], exc)
            app.render(interaction, f"❌ <b>Renewal Failed</b>\n\n{escape_html(exc)}", _back_to_vpn_menu())
            return

        app.users.update_balance(
            interaction.user_id,
            -price,
            TX_VPN_RENEWAL,
            {"server": account["server_name"], "protocol": account["protocol"], "username": account["username"]},
        )
        expiry = extend_expiry(account["expiry_date"], utc_now())
        app.log.update_expiry(account["id"], expiry)
        app.render(
            interaction,
            "✅ <b>Renewal Successful!</b>\n\n"
            f"Account <code>{escape_html(account['username'])}</code> was extended by {PERIOD_DAYS} days.\n"
            f"Active until: <b>{expiry.strftime('%Y-%m-%d %H:%M')}</b>",
            keyboard([back_button("Back to VPN Menu", Action.VPN_MENU.encode())]),
        )
        app.notifier.vpn_renewal(
            interaction.user_id,
            interaction.username,
            account["server_name"],
            account["protocol"],
            account["username"],
            price,
        )
