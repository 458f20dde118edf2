"""Admin panel: users, servers, broadcasts and the top-up log.

Every entry point here is reached only after the router has checked that the
caller has the admin role.
"""
from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict

from .callbacks import Action
from .conversation import (
    KIND_ADD_BALANCE,
    KIND_ADD_SERVER,
    KIND_BROADCAST,
    KIND_EDIT_SERVER,
    KIND_SET_ROLE,
    Interaction,
    PendingAction,
)
from .formatting import PRETTY_LINE, back_button, escape_html, format_rupiah, keyboard
from .pricing import protocol_price
from .telegram import TelegramAPIError
from .userstore import ROLE_ADMIN, ROLES, TX_TOPUP_MANUAL, UserNotFoundError
from .validation import (
    MAX_NUMERIC_VALUE,
    MAX_SERVER_ID_LENGTH,
    is_valid_server_id,
    sanitize_string,
    validate_numeric,
    validate_url,
)
from .vpn_api import PROTOCOL_ORDER, PROTOCOLS, protocol_name

if TYPE_CHECKING:
    from .handlers import BotApp

LOGGER = logging.getLogger(__name__)

EDITABLE_PROPERTIES = {"name": "Name", "domain": "Domain", "api_token": "API Token"}
ADD_SERVER_STEPS = 4 + len(PROTOCOL_ORDER)


def _markup(text: str, action: Action, *args: Any) -> Dict[str, Any]:
    return keyboard([back_button(text, action.encode(*args))])


class AdminHandlers:
    def __init__(self, app: "BotApp") -> None:
        self.app = app
        self._input_handlers: Dict[str, Callable[[Interaction, PendingAction, str], None]] = {
            KIND_ADD_SERVER: self._add_server_input,
            KIND_EDIT_SERVER: self._edit_server_input,
            KIND_BROADCAST: self._broadcast_input,
            KIND_ADD_BALANCE: self._add_balance_input,
            KIND_SET_ROLE: self._set_role_input,
        }

    def _begin(self, interaction: Interaction, kind: str, text: str, markup: Dict[str, Any], *, step=None, data=None) -> None:
        message_id = self.app.render(interaction, text, markup)
        self.app.conversations.begin(
            interaction.user_id,
            kind,
            chat_id=interaction.chat_id,
            message_id=message_id,
            step=step,
            data=data,
        )

    def _abort(self, interaction: Interaction, text: str, back: Action = Action.ADMIN_PANEL) -> None:
        self.app.conversations.complete(interaction.user_id)
        self.app.render(interaction, text, _markup("⬅️ Back", back))

    def process_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        self._input_handlers[pending.kind](interaction, pending, text)

    # ------------------------------------------------------------------
    # menus
    # ------------------------------------------------------------------
    def show_panel(self, interaction: Interaction) -> None:
        text = f"👑 <b>Admin Panel</b>\n{PRETTY_LINE}\nChoose an action:"
        markup = keyboard(
            [{"text": "👤 Manage Users", "callback_data": Action.ADMIN_USERS.encode()}],
            [{"text": "🗄️ Manage VPN Servers", "callback_data": Action.ADMIN_SERVERS.encode()}],
            [{"text": "📢 Broadcast Message", "callback_data": Action.ADMIN_BROADCAST.encode()}],
            [{"text": "📜 View Transactions", "callback_data": Action.ADMIN_TRANSACTIONS.encode()}],
            [back_button("⬅️ Back to Menu", Action.MAIN_MENU.encode())],
        )
        self.app.render(interaction, text, markup)

    def users_menu(self, interaction: Interaction) -> None:
        text = (
            f"👤 <b>Manage Users</b>\n{PRETTY_LINE}\n"
            f"Registered users: <b>{len(self.app.users.all_user_ids())}</b>\n\n"
            "Choose an action."
        )
        markup = keyboard(
            [{"text": "➕ Add Balance Manually", "callback_data": Action.ADMIN_ADD_BALANCE.encode()}],
            [{"text": "👑 Change User Role", "callback_data": Action.ADMIN_SET_ROLE.encode()}],
            [back_button("⬅️ Back", Action.ADMIN_PANEL.encode())],
        )
        self.app.render(interaction, text, markup)

    def servers_menu(self, interaction: Interaction) -> None:
        text = f"🗄️ <b>Manage VPN Servers</b>\n{PRETTY_LINE}\nChoose an action."
        markup = keyboard(
            [{"text": "➕ Add New Server", "callback_data": Action.ADMIN_ADD_SERVER.encode()}],
            [{"text": "✏️ Edit Server", "callback_data": Action.ADMIN_EDIT_SELECT.encode()}],
            [{"text": "🗑️ Delete Server", "callback_data": Action.ADMIN_DELETE_SELECT.encode()}],
            [back_button("⬅️ Back", Action.ADMIN_PANEL.encode())],
        )
        self.app.render(interaction, text, markup)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def prompt_add_balance(self, interaction: Interaction) -> None:
        self._begin(
            interaction,
            KIND_ADD_BALANCE,
            "💰 <b>Add Balance Manually</b>\n\nSend the <b>User ID</b> of the user whose balance you want to change.",
            _markup("Cancel", Action.ADMIN_USERS),
            step="user_id",
        )

    def prompt_set_role(self, interaction: Interaction) -> None:
        self._begin(
            interaction,
            KIND_SET_ROLE,
            "👑 <b>Change User Role</b>\n\nSend the <b>User ID</b> of the user whose role you want to change.",
            _markup("Cancel", Action.ADMIN_USERS),
            step="user_id",
        )

    def _known_user_id(self, interaction: Interaction, text: str, title: str):
        target_id = sanitize_string(text)
        if not target_id.isdigit() or self.app.users.get_user(target_id) is None:
            self.app.render(
                interaction,
                f"❌ User <code>{escape_html(target_id)}</code> not found.\n\n{title}\nSend the <b>User ID</b> again.",
                _markup("Cancel", Action.ADMIN_USERS),
            )
            return None
        return target_id

    def _add_balance_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        app = self.app
        if pending.step == "user_id":
            target_id = self._known_user_id(interaction, text, "💰 <b>Add Balance Manually</b>")
            if target_id is None:
                return
            app.conversations.advance(interaction.user_id, "amount", target_id=target_id)
            user = app.users.get_user(target_id)
            app.render(
                interaction,
                f"💰 <b>Add Balance Manually</b>\n\nUser: <code>{target_id}</code> (@{escape_html(user['username'])})\n"
                f"Current balance: <b>{format_rupiah(user['balance'])}</b>\n\n"
                "Send the amount to add. Use a negative number to deduct.",
                _markup("Cancel", Action.ADMIN_USERS),
            )
            return

        target_id = pending.data["target_id"]
        valid, amount = validate_numeric(sanitize_string(text), min_value=-MAX_NUMERIC_VALUE)
        if not valid or amount == 0:
            app.render(
                interaction,
                "❌ Invalid amount. Send a non-zero whole number, for example <code>50000</code> or <code>-5000</code>.",
                _markup("Cancel", Action.ADMIN_USERS),
            )
            return
        try:
            result = app.users.update_balance(target_id, amount, TX_TOPUP_MANUAL, {"admin_id": interaction.user_id})
        except UserNotFoundError:
            self._abort(interaction, "❌ The user no longer exists. The process was cancelled.", Action.ADMIN_USERS)
            return
        app.conversations.complete(interaction.user_id)
        LOGGER.info("admin %s adjusted balance of %s by %s", interaction.user_id, target_id, amount)
        app.render(
            interaction,
            f"✅ <b>Balance Updated</b>\n\nUser: <code>{target_id}</code>\n"
            f"Change: <b>{format_rupiah(amount)}</b>\n"
            f"New balance: <b>{format_rupiah(result.new_balance)}</b>",
            _markup("⬅️ Back", Action.ADMIN_USERS),
        )
        app.notifier.balance_adjusted(target_id, amount, result.new_balance)

    def _set_role_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        app = self.app
        if pending.step == "user_id":
            target_id = self._known_user_id(interaction, text, "👑 <b>Change User Role</b>")
            if target_id is None:
                return
            app.conversations.advance(interaction.user_id, "role", target_id=target_id)
            app.render(
                interaction,
                f"👑 <b>Change User Role</b>\n\nUser: <code>{target_id}</code>\n"
                f"Send the new role: {', '.join(f'<code>{role}</code>' for role in ROLES)}.",
                _markup("Cancel", Action.ADMIN_USERS),
            )
            return

        target_id = pending.data["target_id"]
        role = sanitize_string(text).lower()
        if role not in ROLES:
            app.render(
                interaction,
                f"❌ Unknown role. Send one of: {', '.join(f'<code>{r}</code>' for r in ROLES)}.",
                _markup("Cancel", Action.ADMIN_USERS),
            )
            return
        if target_id == app.settings.admin_id and role != ROLE_ADMIN:
            self._abort(interaction, "❌ The configured admin cannot be demoted.", Action.ADMIN_USERS)
            return
        try:
            app.users.set_role(target_id, role)
        except UserNotFoundError:
            self._abort(interaction, "❌ The user no longer exists. The process was cancelled.", Action.ADMIN_USERS)
            return
        app.conversations.complete(interaction.user_id)
        app.render(
            interaction,
            f"✅ Role of <code>{target_id}</code> set to <b>{role}</b>.",
            _markup("⬅️ Back", Action.ADMIN_USERS),
        )

    # ------------------------------------------------------------------
    # add server
    # ------------------------------------------------------------------
    def prompt_add_server(self, interaction: Interaction) -> None:
        self._begin(
            interaction,
            KIND_ADD_SERVER,
            f"➕ <b>Add New Server (Step 1/{ADD_SERVER_STEPS})</b>\n\n"
            "Send a <b>unique ID</b> for the new server (example: <code>sg-vultr</code>; lowercase letters, "
            "digits and dashes only). The ID cannot be changed later and is used as the file name.",
            _markup("Cancel", Action.ADMIN_SERVERS),
            step="id",
        )

    def _price_prompt(self, index: int) -> str:
        protocol = PROTOCOL_ORDER[index]
        return (
            f"➕ <b>Add New Server (Step {index + 5}/{ADD_SERVER_STEPS})</b>\n\n"
            f"Send the 30-day price for <b>{protocol_name(protocol)}</b> (digits only, e.g. <code>15000</code>). "
            "Send <code>0</code> if it is not offered."
        )

    def _add_server_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        app = self.app
        value = sanitize_string(text)
        cancel = _markup("Cancel", Action.ADMIN_SERVERS)

        def reprompt(message: str) -> None:
            app.render(interaction, f"❌ {message}", cancel)

        step = pending.step
        if step == "id":
            if not is_valid_server_id(value) or len(value) > MAX_SERVER_ID_LENGTH:
                reprompt(
                    f"Invalid ID. Use only lowercase letters, digits and dashes (at most {MAX_SERVER_ID_LENGTH} characters).\n\n"
                    "Send the server ID again."
                )
                return
            if app.servers.exists(value):
                reprompt(f"A server with ID <code>{escape_html(value)}</code> already exists.\n\nSend a different ID.")
                return
            app.conversations.advance(interaction.user_id, "name", server_id=value)
            app.render(interaction, f"<b>(Step 2/{ADD_SERVER_STEPS})</b>\n\nSend the <b>display name</b> of the server.", cancel)
        elif step == "name":
            if not value:
                reprompt("The name cannot be empty.\n\nSend the server name.")
                return
            app.conversations.advance(interaction.user_id, "domain", name=value)
            app.render(
                interaction,
                f"<b>(Step 3/{ADD_SERVER_STEPS})</b>\n\nSend the <b>API base URL</b> of the server "
                "(example: <code>https://sg1.example.com</code>).",
                cancel,
            )
        elif step == "domain":
            if not validate_url(value):
                reprompt("Invalid URL. It must start with http:// or https://.\n\nSend the API base URL.")
                return
            app.conversations.advance(interaction.user_id, "token", domain=value)
            app.render(interaction, f"<b>(Step 4/{ADD_SERVER_STEPS})</b>\n\nSend the <b>API token</b> for this server.", cancel)
        elif step == "token":
            if not value:
                reprompt("The API token cannot be empty.\n\nSend the API token.")
                return
            app.conversations.advance(interaction.user_id, "price", api_token=value, protocols={}, protocol_index=0)
            app.render(interaction, self._price_prompt(0), cancel)
        elif step == "price":
            valid, price = validate_numeric(value, min_value=0)
            index = int(pending.data.get("protocol_index", 0))
            if not valid:
                reprompt("Invalid price. Send digits only.\n\n" + self._price_prompt(index))
                return
            protocols = dict(pending.data.get("protocols") or {})
            if price > 0:
                protocols[PROTOCOL_ORDER[index]] = {"price_per_30_days": price}
            index += 1
            if index < len(PROTOCOL_ORDER):
                app.conversations.advance(interaction.user_id, "price", protocols=protocols, protocol_index=index)
                app.render(interaction, self._price_prompt(index), cancel)
                return
            self._save_new_server(interaction, pending, protocols)

    def _save_new_server(self, interaction: Interaction, pending: PendingAction, protocols: Dict[str, Any]) -> None:
        app = self.app
        server_id = pending.data["server_id"]
        app.conversations.complete(interaction.user_id)
        if app.servers.exists(server_id):
            app.render(
                interaction,
                f"❌ A server with ID <code>{escape_html(server_id)}</code> was added in the meantime. Nothing was saved.",
                _markup("Back", Action.ADMIN_SERVERS),
            )
            return
        app.servers.save(
            server_id,
            {
                "name": pending.data["name"],
                "domain": pending.data["domain"],
                "api_token": pending.data["api_token"],
                "protocols": protocols,
            },
        )
        LOGGER.info("admin %s added server %s", interaction.user_id, server_id)
        app.render(
            interaction,
            f"✅ <b>Server Added!</b>\n\nServer <b>{escape_html(pending.data['name'])}</b> has been saved.",
            _markup("Back", Action.ADMIN_SERVERS),
        )

    # ------------------------------------------------------------------
    # edit / delete server
    # ------------------------------------------------------------------
    def _select_server(self, interaction: Interaction, title: str, verb: str, action: Action) -> None:
        servers = self.app.servers.list_all()
        if not servers:
            self.app.render(interaction, "No servers are available.", _markup("⬅️ Back", Action.ADMIN_SERVERS))
            return
        rows = [[{"text": server.get("name") or server["id"], "callback_data": action.encode(server["id"])}] for server in servers]
        rows.append([back_button("⬅️ Back", Action.ADMIN_SERVERS.encode())])
        self.app.render(interaction, f"<b>{title}</b>\n{PRETTY_LINE}\nChoose the server you want to {verb}.", keyboard(*rows))

    def select_server_to_edit(self, interaction: Interaction) -> None:
        self._select_server(interaction, "✏️ Edit Server", "edit", Action.ADMIN_EDIT_SERVER)

    def select_server_to_delete(self, interaction: Interaction) -> None:
        self._select_server(interaction, "🗑️ Delete Server", "delete", Action.ADMIN_DELETE_CONFIRM)

    def edit_server_details(self, interaction: Interaction, server_id: str, notice: str = "") -> None:
        server = self.app.servers.get(server_id)
        if server is None:
            self.app.render(interaction, "❌ Server not found.", _markup("⬅️ Back", Action.ADMIN_EDIT_SELECT))
            return
        lines = []
        if notice:
            lines.append(notice + "\n")
        lines.extend(
            [
                f"✏️ <b>Edit Server: {escape_html(server.get('name'))}</b>",
                PRETTY_LINE,
                f"<b>Server ID:</b> <code>{escape_html(server_id)}</code>",
                f"<b>Name:</b> {escape_html(server.get('name'))}",
                f"<b>Domain:</b> {escape_html(server.get('domain'))}",
                f"<b>API Token:</b> <code>{escape_html(server.get('api_token'))}</code>",
                "",
                "<b>Protocol Prices:</b>",
            ]
        )
        for protocol in PROTOCOL_ORDER:
            lines.append(f"• {protocol_name(protocol)}: {format_rupiah(protocol_price(server, protocol) or 0)}")
        lines.append(f"{PRETTY_LINE}\nChoose what to change:")

        rows = [
            [{"text": f"Change {label}", "callback_data": Action.ADMIN_EDIT_PROPERTY.encode(server_id, prop)}]
            for prop, label in EDITABLE_PROPERTIES.items()
        ]
        rows.extend(
            [{"text": f"Change {protocol_name(protocol)} Price", "callback_data": Action.ADMIN_EDIT_PRICE.encode(server_id, protocol)}]
            for protocol in PROTOCOL_ORDER
        )
        rows.append([back_button("⬅️ Back", Action.ADMIN_EDIT_SELECT.encode())])
        self.app.render(interaction, "\n".join(lines), keyboard(*rows))

    def prompt_edit_property(self, interaction: Interaction, server_id: str, prop: str) -> None:
        if prop not in EDITABLE_PROPERTIES:
            LOGGER.warning("unknown server property %r requested by %s", prop, interaction.user_id)
            return
        if not self.app.servers.exists(server_id):
            self.app.render(interaction, "❌ Server not found.", _markup("⬅️ Back", Action.ADMIN_EDIT_SELECT))
            return
        self._begin(
            interaction,
            KIND_EDIT_SERVER,
            f"✏️ <b>Change Server Property</b>\n\nSend the new <b>{EDITABLE_PROPERTIES[prop]}</b> "
            f"for server <code>{escape_html(server_id)}</code>.",
            _markup("Cancel", Action.ADMIN_EDIT_SERVER, server_id),
            step="value",
            data={"server_id": server_id, "property": prop},
        )

    def prompt_edit_price(self, interaction: Interaction, server_id: str, protocol: str) -> None:
        if protocol not in PROTOCOLS:
            LOGGER.warning("unknown protocol %r requested by %s", protocol, interaction.user_id)
            return
        if not self.app.servers.exists(server_id):
            self.app.render(interaction, "❌ Server not found.", _markup("⬅️ Back", Action.ADMIN_EDIT_SELECT))
            return
        self._begin(
            interaction,
            KIND_EDIT_SERVER,
            f"✏️ <b>Change Server Property</b>\n\nSend the new 30-day price for <b>{protocol_name(protocol)}</b> "
            f"on server <code>{escape_html(server_id)}</code> (digits only, e.g. <code>15000</code>; "
            "<code>0</code> removes the protocol).",
            _markup("Cancel", Action.ADMIN_EDIT_SERVER, server_id),
            step="value",
            data={"server_id": server_id, "property": "price", "protocol": protocol},
        )

    def _edit_server_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        app = self.app
        server_id = pending.data["server_id"]
        prop = pending.data["property"]
        server = app.servers.get(server_id)
        if server is None:
            self._abort(interaction, "❌ Server not found. The process was cancelled.", Action.ADMIN_SERVERS)
            return

        value = sanitize_string(text)
        cancel = _markup("Cancel", Action.ADMIN_EDIT_SERVER, server_id)
        if prop == "price":
            valid, price = validate_numeric(value, min_value=0)
            if not valid:
                app.render(interaction, "❌ Invalid price. Send digits only.", cancel)
                return
            protocol = pending.data["protocol"]
            protocols = dict(server.get("protocols") or {})
            if price == 0:
                protocols.pop(protocol, None)
            else:
                protocols[protocol] = {"price_per_30_days": price}
            server["protocols"] = protocols
        else:
            if not value or (prop == "domain" and not validate_url(value)):
                app.render(interaction, f"❌ Invalid {EDITABLE_PROPERTIES[prop]}. Send it again.", cancel)
                return
            server[prop] = value

        app.servers.save(server_id, server)
        app.conversations.complete(interaction.user_id)
        LOGGER.info("admin %s changed %s of server %s", interaction.user_id, prop, server_id)
        self.edit_server_details(interaction, server_id, notice="✅ Changes saved.")

    def confirm_delete(self, interaction: Interaction, server_id: str) -> None:
        server = self.app.servers.get(server_id)
        if server is None:
            self.app.render(interaction, "❌ Server not found.", _markup("⬅️ Back", Action.ADMIN_DELETE_SELECT))
            return
        text = (
            "🗑️ <b>Confirm Server Deletion</b>\n\n"
            f"Are you sure you want to delete server <b>{escape_html(server.get('name'))}</b> "
            f"(<code>{escape_html(server_id)}</code>)?\n\nThis cannot be undone."
        )
        markup = keyboard(
            [{"text": "❌ NO, cancel", "callback_data": Action.ADMIN_DELETE_SELECT.encode()}],
            [{"text": "✅ YES, DELETE NOW", "callback_data": Action.ADMIN_DELETE_EXECUTE.encode(server_id)}],
        )
        self.app.render(interaction, text, markup)

    def execute_delete(self, interaction: Interaction, server_id: str) -> None:
        server = self.app.servers.get(server_id)
        if server is None:
            self.app.render(interaction, "❌ Server not found.", _markup("⬅️ Back", Action.ADMIN_SERVERS))
            return
        self.app.servers.delete(server_id)
        LOGGER.info("admin %s deleted server %s", interaction.user_id, server_id)
        self.app.render(
            interaction,
            f"✅ <b>Server Deleted!</b>\n\nServer <b>{escape_html(server.get('name'))}</b> "
            f"(<code>{escape_html(server_id)}</code>) has been deleted.",
            _markup("Back", Action.ADMIN_SERVERS),
        )

    # ------------------------------------------------------------------
    # broadcast and reports
    # ------------------------------------------------------------------
    def prompt_broadcast(self, interaction: Interaction) -> None:
        self._begin(
            interaction,
            KIND_BROADCAST,
            "📢 <b>Send Broadcast</b>\n\nSend the message you want to deliver to every user. Markdown formatting is supported.",
            _markup("Cancel", Action.ADMIN_PANEL),
        )

    def _broadcast_input(self, interaction: Interaction, pending: PendingAction, text: str) -> None:
        app = self.app
        if not text.strip():
            app.render(interaction, "❌ The broadcast message cannot be empty. Send a text message.", _markup("Cancel", Action.ADMIN_PANEL))
            return
        app.conversations.complete(interaction.user_id)
        recipients = app.users.all_user_ids()
        app.render(interaction, f"⏳ Starting broadcast to <b>{len(recipients)}</b> users...")

        sent = failed = 0
        for index, user_id in enumerate(recipients):
            try:
                app.bot.send_message(user_id, text, parse_mode="Markdown")
                sent += 1
            except TelegramAPIError as exc:
                failed += 1
                LOGGER.warning("broadcast to user %s failed: %s", user_id, exc)
            if index < len(recipients) - 1 and app.settings.broadcast_delay > 0:
                time.sleep(app.settings.broadcast_delay)

        LOGGER.info("broadcast by %s finished: %s sent, %s failed", interaction.user_id, sent, failed)
        app.render(
            interaction,
            f"✅ <b>Broadcast Finished!</b>\n\nDelivered: <b>{sent}</b>\nFailed: <b>{failed}</b>",
            _markup("Back", Action.ADMIN_PANEL),
        )

    def view_transactions(self, interaction: Interaction) -> None:
        topups = self.app.log.recent_topups(10)
        lines = ["📜 <b>Last 10 Top-up Transactions</b>", PRETTY_LINE]
        if not topups:
            lines.append("<i>No top-up transactions yet.</i>")
        for row in topups:
            lines.extend(
                [
                    f"<b>User ID:</b> <code>{escape_html(row['telegram_id'])}</code>",
                    f"<b>Amount:</b> {format_rupiah(row['amount'])}",
                    f"<b>Invoice:</b> <code>{escape_html(row['invoice_id'])}</code>",
                    f"<b>Status:</b> {escape_html(row['status'])}",
                    f"<b>Date:</b> {escape_html(row['created_at'][:19].replace('T', ' '))}",
                    PRETTY_LINE,
                ]
            )
        self.app.render(interaction, "\n".join(lines), _markup("Back", Action.ADMIN_PANEL))
