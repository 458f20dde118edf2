"""Tests for the server directory and the SQLite transaction log."""
from datetime import datetime, timedelta

import pytest

from vpn_store.database import STATUS_PAID, STATUS_PENDING, TransactionLog
from vpn_store.servers import ServerNotFoundError, ServerStore


@pytest.fixture
def server_store(tmp_path):
    return ServerStore(str(tmp_path / "servers"))


@pytest.fixture
def tx_log():
    return TransactionLog.open(":memory:")


class TestServerStore:
    """Tests for per-server JSON files."""

    def test_save_and_get(self, server_store):
        server_store.save("sg-1", {"name": "SG", "domain": "https://sg", "api_token": "t", "protocols": {}})
        server = server_store.get("sg-1")
        assert server["id"] == "sg-1"
        assert server["name"] == "SG"
        assert server_store.exists("sg-1")

    def test_missing_server(self, server_store):
        assert server_store.get("nope") is None
        assert server_store.exists("nope") is False

    def test_invalid_id_is_never_a_path(self, server_store):
        """Ids outside the slug alphabet are treated as unknown."""
        assert server_store.get("../etc") is None
        with pytest.raises(ServerNotFoundError):
            server_store.save("Bad Id", {"name": "x"})

    def test_list_all_is_sorted(self, server_store):
        server_store.save("b-2", {"name": "B"})
        server_store.save("a-1", {"name": "A"})
        assert [s["id"] for s in server_store.list_all()] == ["a-1", "b-2"]

    def test_find_by_name(self, server_store):
        server_store.save("sg-1", {"name": "Singapore"})
        assert server_store.find_by_name("Singapore")["id"] == "sg-1"
        assert server_store.find_by_name("Tokyo") is None

    def test_corrupt_file_is_skipped(self, server_store, tmp_path):
        (tmp_path / "servers" / "bad.json").write_text("{not json", encoding="utf-8")
        assert server_store.get("bad") is None
        assert server_store.list_all() == []

    def test_delete(self, server_store):
        server_store.save("sg-1", {"name": "SG"})
        server_store.delete("sg-1")
        assert server_store.exists("sg-1") is False
        with pytest.raises(ServerNotFoundError):
            server_store.delete("sg-1")


class TestTransactionLog:
    """Tests for the VPN account and top-up tables."""

    def _purchase(self, tx_log, **overrides):
        now = datetime(2024, 1, 1, 12, 0, 0)
        fields = dict(
            idtrx="vmess-0011223344556677",
            telegram_id="42",
            buyer_username="alice",
            server_id="sg-1",
            server_name="SG",
            protocol="vmess",
            username="alice01",
            password="abcd1234",
            price=15000,
            duration_days=30,
            purchase_date=now,
            expiry_date=now + timedelta(days=30),
        )
        fields.update(overrides)
        return tx_log.record_vpn_purchase(**fields)

    def test_record_and_list_accounts(self, tx_log):
        account_id = self._purchase(tx_log)
        accounts = tx_log.list_accounts("42")
        assert len(accounts) == 1
        assert accounts[0]["id"] == account_id
        assert accounts[0]["server_id"] == "sg-1"
        assert tx_log.list_accounts("43") == []

    def test_get_account_is_scoped_to_owner(self, tx_log):
        account_id = self._purchase(tx_log)
        assert tx_log.get_account(account_id, "42")["username"] == "alice01"
        assert tx_log.get_account(account_id, "43") is None

    def test_update_expiry(self, tx_log):
        account_id = self._purchase(tx_log)
        tx_log.update_expiry(account_id, datetime(2024, 3, 1))
        assert tx_log.get_account(account_id, "42")["expiry_date"] == "2024-03-01T00:00:00"

    def test_invoice_moves_from_pending_to_paid_once(self, tx_log):
        tx_log.record_invoice("inv-1", "42", 50000)
        assert tx_log.get_invoice("inv-1")["status"] == STATUS_PENDING
        assert tx_log.mark_invoice_paid("inv-1", "42", 50000) is True
        invoice = tx_log.get_invoice("inv-1")
        assert invoice["status"] == STATUS_PAID
        assert invoice["paid_at"]
        assert tx_log.mark_invoice_paid("inv-1", "42", 50000) is False

    def test_unknown_invoice_is_inserted_as_paid(self, tx_log):
        assert tx_log.mark_invoice_paid("inv-9", "42", 20000) is True
        assert tx_log.get_invoice("inv-9")["status"] == STATUS_PAID

    def test_recent_topups(self, tx_log):
        for index in range(12):
            tx_log.record_invoice(f"inv-{index}", "42", 10000 + index)
        assert len(tx_log.recent_topups(10)) == 10
