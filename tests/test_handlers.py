"""End-to-end tests for the bot flows with a mocked Telegram API."""
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ChunkedEncodingError

from conftest import ADMIN_ID, button_press, last_text, sent_texts, text_message
from vpn_store.conversation import KIND_ADD_SERVER, KIND_TOPUP_AMOUNT
from vpn_store.database import STATUS_PAID, STATUS_PENDING
from vpn_store.payment import PaymentGatewayError, build_invoice_notes
from vpn_store.pricing import utc_now
from vpn_store.telegram import TelegramAPIError
from vpn_store.userstore import ROLE_ADMIN, ROLE_USER, TX_TOPUP_MANUAL, TX_VPN_PURCHASE, TX_VPN_RENEWAL
from vpn_store.vpn_api import ProvisionResult, VPNAPIError, VPNClient

SG_SERVER = {
    "name": "SG Test",
    "domain": "https://x",
    "api_token": "abc",
    "protocols": {"vmess": {"price_per_30_days": 15000}},
}


def _callback_data(markup):
    return [button["callback_data"] for row in markup["inline_keyboard"] for button in row]


def _fund(users, user_id, amount):
    users.ensure_user(user_id, "buyer")
    if amount:
        users.update_balance(user_id, amount, TX_TOPUP_MANUAL)


def _broken_transport(app):
    """Provision through a real client whose connection breaks mid-response."""

    def factory(server):
        client = VPNClient(server)
        client.session.post = Mock(side_effect=ChunkedEncodingError("connection broken"))
        return client

    app.make_vpn_client = factory


class TestRouting:
    """Tests for message and callback routing."""

    def test_start_registers_user_and_shows_menu(self, app, bot, users):
        """A new user gets a record, a welcome and a menu without admin entry."""
        app.process_update(text_message("42", "/start"))

        user = users.get_user("42")
        assert user["balance"] == 0
        assert user["role"] == ROLE_USER
        texts = sent_texts(bot)
        assert texts[0].startswith("Welcome!")
        assert "Balance" in texts[-1]
        markup = bot.send_message.call_args.kwargs["reply_markup"]
        assert "admin:panel" not in _callback_data(markup)

    def test_admin_menu_has_admin_button(self, app, bot, users):
        app.process_update(text_message(ADMIN_ID, "/start"))
        assert users.get_user(ADMIN_ID)["role"] == ROLE_ADMIN
        markup = bot.send_message.call_args.kwargs["reply_markup"]
        assert "admin:panel" in _callback_data(markup)

    def test_group_messages_are_ignored(self, app, bot, users):
        app.process_update(text_message("42", "/start", chat_type="group"))
        assert users.get_user("42") is None
        bot.send_message.assert_not_called()

    def test_plain_text_shows_main_menu(self, app, bot):
        app.process_update(text_message("42", "hello"))
        assert "Please choose a menu below" in last_text(bot)

    def test_admin_command_for_non_admin_shows_main_menu(self, app, bot):
        app.process_update(text_message("42", "/admin"))
        assert "Admin Panel" not in last_text(bot)

    def test_admin_command_opens_panel(self, app, bot):
        app.process_update(text_message(ADMIN_ID, "/admin"))
        assert "Admin Panel" in last_text(bot)

    def test_callbacks_are_answered_first(self, app, bot):
        app.process_update(button_press("42", "menu:vpn"))
        assert bot.mock_calls[0][0] == "answer_callback_query"
        assert "VPN Menu" in last_text(bot)

    def test_unknown_callback_is_ignored(self, app, bot):
        app.process_update(button_press("42", "something_old"))
        bot.answer_callback_query.assert_called_once()
        bot.edit_message_text.assert_not_called()

    def test_admin_callback_requires_admin_role(self, app, bot):
        app.process_update(button_press("42", "admin:panel"))
        bot.edit_message_text.assert_not_called()

    def test_button_press_cancels_pending_action(self, app, bot):
        app.process_update(button_press("42", "topup:menu"))
        assert app.conversations.current("42").kind == KIND_TOPUP_AMOUNT
        app.process_update(button_press("42", "menu:main"))
        assert app.conversations.current("42") is None

    def test_handler_errors_do_not_escape(self, app, bot):
        bot.send_message.side_effect = RuntimeError("network down")
        app.process_update(text_message("42", "/start"))

    def test_pending_admin_input_dropped_after_demotion(self, app, bot, users):
        users.ensure_user("42", "buyer")
        users.set_role("42", ROLE_ADMIN)
        app.process_update(button_press("42", "admin:add_server"))
        users.set_role("42", ROLE_USER)
        app.process_update(text_message("42", "sg-1"))
        assert app.conversations.current("42") is None
        assert app.servers.exists("sg-1") is False


class TestAddServerFlow:
    """Tests for the multi-step add-server conversation."""

    def _answers(self, app, *answers):
        for answer in answers:
            app.process_update(text_message(ADMIN_ID, answer, username="boss"))

    def test_zero_prices_omit_protocols(self, app, servers):
        """Only protocols with a positive price are stored."""
        app.process_update(button_press(ADMIN_ID, "admin:add_server", username="boss"))
        self._answers(app, "sg-1", "SG Test", "https://x", "abc", "15000", "0", "0", "0", "0", "0")

        server = servers.get("sg-1")
        assert server["name"] == "SG Test"
        assert server["domain"] == "https://x"
        assert server["api_token"] == "abc"
        assert server["protocols"] == {"ssh": {"price_per_30_days": 15000}}
        assert app.conversations.current(ADMIN_ID) is None

    def test_duplicate_id_reprompts(self, app, bot, servers):
        servers.save("sg-1", SG_SERVER)
        app.process_update(button_press(ADMIN_ID, "admin:add_server", username="boss"))
        self._answers(app, "sg-1")
        pending = app.conversations.current(ADMIN_ID)
        assert pending.kind == KIND_ADD_SERVER
        assert pending.step == "id"
        assert "already exists" in last_text(bot)

        self._answers(app, "sg-2")
        assert app.conversations.current(ADMIN_ID).step == "name"

    def test_invalid_inputs_do_not_advance(self, app):
        app.process_update(button_press(ADMIN_ID, "admin:add_server", username="boss"))
        self._answers(app, "Bad Id")
        assert app.conversations.current(ADMIN_ID).step == "id"
        self._answers(app, "sg-1", "SG", "not-a-url")
        assert app.conversations.current(ADMIN_ID).step == "domain"
        self._answers(app, "https://x", "abc", "-5")
        pending = app.conversations.current(ADMIN_ID)
        assert pending.step == "price"
        assert pending.data["protocol_index"] == 0

    def test_user_messages_are_deleted(self, app, bot):
        app.process_update(button_press(ADMIN_ID, "admin:add_server", username="boss"))
        app.process_update(text_message(ADMIN_ID, "sg-1", message_id=77))
        bot.delete_message.assert_called_with(int(ADMIN_ID), 77)


class TestEditAndDeleteServer:
    """Tests for editing and deleting servers."""

    def test_price_zero_removes_protocol(self, app, servers):
        servers.save("sg-1", dict(SG_SERVER, protocols={"vmess": {"price_per_30_days": 15000}, "ssh": {"price_per_30_days": 10000}}))
        app.process_update(button_press(ADMIN_ID, "admin:edit_price:sg-1:vmess"))
        app.process_update(text_message(ADMIN_ID, "0"))
        assert servers.get("sg-1")["protocols"] == {"ssh": {"price_per_30_days": 10000}}

    def test_edit_name(self, app, bot, servers):
        servers.save("sg-1", SG_SERVER)
        app.process_update(button_press(ADMIN_ID, "admin:edit_prop:sg-1:name"))
        app.process_update(text_message(ADMIN_ID, "Singapore 1"))
        assert servers.get("sg-1")["name"] == "Singapore 1"
        assert "Changes saved" in last_text(bot)

    def test_server_deleted_mid_flow_aborts(self, app, bot, servers):
        servers.save("sg-1", SG_SERVER)
        app.process_update(button_press(ADMIN_ID, "admin:edit_prop:sg-1:name"))
        servers.delete("sg-1")
        app.process_update(text_message(ADMIN_ID, "New Name"))
        assert app.conversations.current(ADMIN_ID) is None
        assert "Server not found" in last_text(bot)
        assert servers.exists("sg-1") is False

    def test_delete_server(self, app, servers):
        servers.save("sg-1", SG_SERVER)
        app.process_update(button_press(ADMIN_ID, "admin:delete_do:sg-1"))
        assert servers.exists("sg-1") is False


class TestAdminUsers:
    """Tests for manual balance and role changes."""

    def test_add_balance(self, app, bot, users):
        users.ensure_user("42", "buyer")
        app.process_update(button_press(ADMIN_ID, "admin:add_balance"))
        app.process_update(text_message(ADMIN_ID, "42"))
        app.process_update(text_message(ADMIN_ID, "25000"))

        user = users.get_user("42")
        assert user["balance"] == 25000
        assert user["topup_history"][-1]["type"] == TX_TOPUP_MANUAL
        assert app.conversations.current(ADMIN_ID) is None

    def test_add_balance_unknown_user_reprompts(self, app, bot):
        app.process_update(button_press(ADMIN_ID, "admin:add_balance"))
        app.process_update(text_message(ADMIN_ID, "999"))
        assert app.conversations.current(ADMIN_ID).step == "user_id"
        assert "not found" in last_text(bot)

    def test_add_balance_rejects_zero(self, app, users):
        users.ensure_user("42", "buyer")
        app.process_update(button_press(ADMIN_ID, "admin:add_balance"))
        app.process_update(text_message(ADMIN_ID, "42"))
        app.process_update(text_message(ADMIN_ID, "0"))
        assert app.conversations.current(ADMIN_ID).step == "amount"
        assert users.get_user("42")["balance"] == 0

    def test_set_role(self, app, users):
        users.ensure_user("42", "buyer")
        app.process_update(button_press(ADMIN_ID, "admin:set_role"))
        app.process_update(text_message(ADMIN_ID, "42"))
        app.process_update(text_message(ADMIN_ID, "admin"))
        assert users.is_admin("42") is True

    def test_configured_admin_cannot_be_demoted(self, app, users):
        app.process_update(button_press(ADMIN_ID, "admin:set_role"))
        app.process_update(text_message(ADMIN_ID, ADMIN_ID))
        app.process_update(text_message(ADMIN_ID, "user"))
        assert users.is_admin(ADMIN_ID) is True


class TestBroadcast:
    """Tests for the broadcast flow."""

    def test_failures_are_counted(self, app, bot, users):
        users.ensure_user("42", "a")
        users.ensure_user("43", "b")

        def send(chat_id, text, **kwargs):
            if str(chat_id) == "43":
                raise TelegramAPIError("bot was blocked by the user")
            return {"message_id": 1}

        bot.send_message.side_effect = send
        app.process_update(button_press(ADMIN_ID, "admin:broadcast"))
        app.process_update(text_message(ADMIN_ID, "*Promo* today"))

        broadcast_calls = [c for c in bot.send_message.call_args_list if c.args[1] == "*Promo* today"]
        assert len(broadcast_calls) == 3
        assert all(c.kwargs["parse_mode"] == "Markdown" for c in broadcast_calls)
        report = last_text(bot)
        assert "Delivered: <b>2</b>" in report
        assert "Failed: <b>1</b>" in report

    def test_sends_are_spaced_by_the_delay(self, app, users):
        users.ensure_user("42", "a")
        users.ensure_user("43", "b")
        app.settings.broadcast_delay = 0.5
        app.process_update(button_press(ADMIN_ID, "admin:broadcast"))
        with patch("vpn_store.admin.time.sleep") as sleep:
            app.process_update(text_message(ADMIN_ID, "hello"))

        recipients = users.all_user_ids()
        assert len(recipients) == 3
        assert sleep.call_count == len(recipients) - 1
        assert all(c.args == (0.5,) for c in sleep.call_args_list)


class TestTopupFlow:
    """Tests for the top-up conversation."""

    def test_out_of_range_amount_reprompts(self, app, bot, payment):
        app.process_update(button_press("42", "topup:menu"))
        app.process_update(text_message("42", "5000"))
        payment.create_invoice.assert_not_called()
        assert app.conversations.current("42").kind == KIND_TOPUP_AMOUNT
        assert "Invalid Amount" in last_text(bot)

        app.process_update(text_message("42", "2000000"))
        payment.create_invoice.assert_not_called()

    def test_valid_amount_creates_invoice(self, app, bot, payment, log):
        payment.create_invoice.return_value = {"id": "inv-1"}
        payment.get_invoice_qr.return_value = b"png-bytes"
        app.process_update(button_press("42", "topup:menu"))
        app.process_update(text_message("42", "Rp 50.000"))

        payment.create_invoice.assert_called_once_with(50000, "42", "buyer")
        assert log.get_invoice("inv-1")["status"] == STATUS_PENDING
        assert bot.send_photo.call_args.args[1] == b"png-bytes"
        assert "inv-1" in bot.send_photo.call_args.kwargs["caption"]
        assert app.conversations.current("42") is None

    def test_gateway_error_is_reported(self, app, bot, payment, log):
        payment.create_invoice.side_effect = PaymentGatewayError("Could not reach the payment server.")
        app.process_update(button_press("42", "topup:menu"))
        app.process_update(text_message("42", "50000"))
        assert "Could not reach the payment server." in last_text(bot)
        bot.send_photo.assert_not_called()
        assert log.recent_topups() == []


class TestPaymentCallback:
    """Tests for crediting paid invoices."""

    def _payload(self, user_id="42", invoice_id="inv-1", amount=50000, status="PAID"):
        return {"id": invoice_id, "status": status, "amount": amount, "notes": build_invoice_notes(user_id, "buyer")}

    def test_paid_invoice_credits_once(self, app, users, log):
        users.ensure_user("42", "buyer")
        log.record_invoice("inv-1", "42", 50000)

        status, body = app.handle_payment_callback(self._payload())
        assert (status, body["message"]) == (200, "Webhook processed")
        assert users.get_user("42")["balance"] == 50000
        assert log.get_invoice("inv-1")["status"] == STATUS_PAID

        status, body = app.handle_payment_callback(self._payload())
        assert (status, body["message"]) == (200, "Duplicate callback ignored")
        user = users.get_user("42")
        assert user["balance"] == 50000
        assert len(user["topup_history"]) == 1

    def test_buyer_and_admin_are_notified(self, app, bot, users):
        users.ensure_user("42", "buyer")
        app.handle_payment_callback(self._payload())
        recipients = [str(c.args[0]) for c in bot.send_message.call_args_list]
        assert recipients == ["42", ADMIN_ID]

    def test_unknown_user_is_rejected(self, app, users):
        status, body = app.handle_payment_callback(self._payload(user_id="404"))
        assert status == 400
        assert body["status"] == "error"
        assert users.get_user("404") is None

    def test_unpaid_status_is_rejected(self, app, users):
        users.ensure_user("42", "buyer")
        status, body = app.handle_payment_callback(self._payload(status="EXPIRED"))
        assert status == 400
        assert users.get_user("42")["balance"] == 0


class TestVPNPurchase:
    """Tests for buying an account."""

    @pytest.fixture(autouse=True)
    def _server(self, servers):
        servers.save("sg-1", SG_SERVER)

    def _buy(self, app, username="alice01"):
        app.process_update(button_press("42", "vpn:username:sg-1:vmess"))
        app.process_update(text_message("42", username))

    def test_insufficient_balance_never_provisions(self, app, bot, users, vpn_client, log):
        _fund(users, "42", 5000)
        self._buy(app)
        vpn_client.create_account.assert_not_called()
        assert users.get_user("42")["balance"] == 5000
        assert "Insufficient balance" in last_text(bot)
        assert log.list_accounts("42") == []

    def test_successful_purchase_debits_once_and_records(self, app, bot, users, vpn_client, log):
        _fund(users, "42", 20000)
        vpn_client.create_account.return_value = ProvisionResult(
            details="ACCOUNT DETAILS", password="pw123456", trx_id="vmess-0123456789abcdef"
        )
        self._buy(app)

        vpn_client.create_account.assert_called_once_with("vmess", "alice01")
        user = users.get_user("42")
        assert user["balance"] == 5000
        purchases = [e for e in user["topup_history"] if e["type"] == TX_VPN_PURCHASE]
        assert [e["amount"] for e in purchases] == [-15000]
        accounts = log.list_accounts("42")
        assert len(accounts) == 1
        assert accounts[0]["idtrx"] == "vmess-0123456789abcdef"
        assert accounts[0]["server_id"] == "sg-1"
        assert accounts[0]["price"] == 15000
        assert last_text(bot) == "ACCOUNT DETAILS"

    def test_provisioning_failure_changes_nothing(self, app, bot, users, vpn_client, log):
        _fund(users, "42", 20000)
        vpn_client.create_account.side_effect = VPNAPIError("User already exists")
        self._buy(app)

        assert users.get_user("42")["balance"] == 20000
        assert log.list_accounts("42") == []
        assert "User already exists" in last_text(bot)

    def test_request_failure_is_reported(self, app, bot, users, log):
        _fund(users, "42", 20000)
        _broken_transport(app)
        self._buy(app)

        text = last_text(bot)
        assert "Failed to Create Account" in text
        assert "Request to server SG Test failed." in text
        assert users.get_user("42")["balance"] == 20000
        assert log.list_accounts("42") == []

    def test_invalid_username_reprompts(self, app, bot, users, vpn_client):
        _fund(users, "42", 20000)
        self._buy(app, username="Not Valid")
        vpn_client.create_account.assert_not_called()
        assert app.conversations.current("42") is not None
        assert "Invalid username" in last_text(bot)

    def test_removed_protocol_aborts(self, app, bot, users, servers, vpn_client):
        _fund(users, "42", 20000)
        app.process_update(button_press("42", "vpn:username:sg-1:vmess"))
        servers.save("sg-1", dict(SG_SERVER, protocols={}))
        app.process_update(text_message("42", "alice01"))
        vpn_client.create_account.assert_not_called()
        assert app.conversations.current("42") is None

    def test_protocol_menu_lists_priced_protocols(self, app, bot):
        app.process_update(button_press("42", "vpn:protocol:sg-1"))
        markup = bot.edit_message_text.call_args.kwargs["reply_markup"]
        assert "vpn:username:sg-1:vmess" in _callback_data(markup)
        assert "vpn:username:sg-1:ssh" not in _callback_data(markup)


class TestVPNRenewal:
    """Tests for renewing an account."""

    @pytest.fixture
    def account(self, servers, log):
        servers.save("sg-1", SG_SERVER)
        now = utc_now()
        expiry = now + timedelta(days=5)
        account_id = log.record_vpn_purchase(
            idtrx="vmess-aaaaaaaaaaaaaaaa",
            telegram_id="42",
            buyer_username="buyer",
            server_id="sg-1",
            server_name="SG Test",
            protocol="vmess",
            username="alice01",
            password=None,
            price=15000,
            duration_days=30,
            purchase_date=now,
            expiry_date=expiry,
        )
        return account_id, expiry

    def test_renewal_extends_from_current_expiry(self, app, users, vpn_client, log, account):
        account_id, expiry = account
        _fund(users, "42", 20000)
        app.process_update(button_press("42", f"vpn:renew_do:{account_id}"))

        vpn_client.renew_account.assert_called_once_with("vmess", "alice01")
        user = users.get_user("42")
        assert user["balance"] == 5000
        assert user["topup_history"][-1]["type"] == TX_VPN_RENEWAL
        assert log.get_account(account_id, "42")["expiry_date"] == (expiry + timedelta(days=30)).isoformat()

    def test_renewal_needs_funds(self, app, bot, users, vpn_client, account):
        account_id, _ = account
        _fund(users, "42", 1000)
        app.process_update(button_press("42", f"vpn:renew_do:{account_id}"))
        vpn_client.renew_account.assert_not_called()
        assert users.get_user("42")["balance"] == 1000
        assert "Insufficient balance" in last_text(bot)

    def test_other_users_account_is_not_found(self, app, bot, users, vpn_client, account):
        account_id, _ = account
        _fund(users, "43", 20000)
        app.process_update(button_press("43", f"vpn:renew_do:{account_id}"))
        vpn_client.renew_account.assert_not_called()
        assert "Account not found" in last_text(bot)

    def test_renewal_failure_keeps_balance(self, app, users, vpn_client, log, account):
        account_id, expiry = account
        _fund(users, "42", 20000)
        vpn_client.renew_account.side_effect = VPNAPIError("server busy")
        app.process_update(button_press("42", f"vpn:renew_do:{account_id}"))
        assert users.get_user("42")["balance"] == 20000
        assert log.get_account(account_id, "42")["expiry_date"] == expiry.isoformat()

    def test_renewal_request_failure_is_reported(self, app, bot, users, log, account):
        account_id, expiry = account
        _fund(users, "42", 20000)
        _broken_transport(app)
        app.process_update(button_press("42", f"vpn:renew_do:{account_id}"))

        assert "Renewal Failed" in last_text(bot)
        assert users.get_user("42")["balance"] == 20000
        assert log.get_account(account_id, "42")["expiry_date"] == expiry.isoformat()

    def test_my_accounts_lists_days_left(self, app, bot, account):
        app.process_update(button_press("42", "vpn:accounts"))
        assert "alice01" in last_text(bot)
