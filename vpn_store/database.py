"""Transaction log built around :mod:`sqlite3`.

Two tables record what happened outside the JSON user store: provisioned VPN
accounts and top-up invoices.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .pricing import utc_now

STATUS_PENDING = "PENDING"
STATUS_PAID = "PAID"

CREATE_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS vpn_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        idtrx TEXT NOT NULL UNIQUE,
        telegram_id TEXT NOT NULL,
        buyer_telegram_username TEXT,
        server_id TEXT,
        server_name TEXT NOT NULL,
        protocol TEXT NOT NULL,
        username TEXT NOT NULL,
        password TEXT,
        price INTEGER NOT NULL,
        duration_days INTEGER NOT NULL,
        purchase_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS topup_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id TEXT UNIQUE,
        telegram_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL,
        payment_method TEXT,
        created_at TEXT NOT NULL,
        paid_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vpn_transactions_telegram_id ON vpn_transactions (telegram_id)",
]


def connect(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with sensible defaults."""

    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize(conn: sqlite3.Connection) -> None:
    """Create tables if they do not exist."""

    cursor = conn.cursor()
    for statement in CREATE_STATEMENTS:
        cursor.execute(statement)
    conn.commit()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """Context manager that wraps a transaction."""

    cursor = conn.cursor()
    try:
        yield cursor
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def fetch_one(cursor: sqlite3.Cursor) -> Optional[Dict[str, Any]]:
    """Convert a single row into a dictionary."""

    row = cursor.fetchone()
    return dict(row) if row else None


def fetch_all(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    """Convert rows into a list of dictionaries."""

    rows = cursor.fetchall()
    return [dict(row) for row in rows]


class TransactionLog:
    """Queries used by the handlers, serialised over one shared connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.Lock()
        initialize(conn)

    @classmethod
    def open(cls, db_path: str) -> "TransactionLog":
        return cls(connect(db_path))

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        with self._lock, transaction(self.conn) as cur:
            yield cur

    # ------------------------------------------------------------------
    # VPN accounts
    # ------------------------------------------------------------------
    def record_vpn_purchase(
        self,
        *,
        idtrx: str,
        telegram_id: str,
        buyer_username: Optional[str],
        server_id: str,
        server_name: str,
        protocol: str,
        username: str,
        password: Optional[str],
        price: int,
        duration_days: int,
        purchase_date: datetime,
        expiry_date: datetime,
    ) -> int:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO vpn_transactions (idtrx, telegram_id, buyer_telegram_username, server_id, server_name,"
                " protocol, username, password, price, duration_days, purchase_date, expiry_date)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    idtrx,
                    str(telegram_id),
                    buyer_username,
                    server_id,
                    server_name,
                    protocol,
                    username,
                    password,
                    int(price),
                    int(duration_days),
                    purchase_date.isoformat(),
                    expiry_date.isoformat(),
                ),
            )
            return cur.lastrowid

    def list_accounts(self, telegram_id: str) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM vpn_transactions WHERE telegram_id = ? ORDER BY expiry_date ASC",
                (str(telegram_id),),
            )
            return fetch_all(cur)

    def get_account(self, account_id: int, telegram_id: str) -> Optional[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM vpn_transactions WHERE id = ? AND telegram_id = ?",
                (int(account_id), str(telegram_id)),
            )
            return fetch_one(cur)

    def update_expiry(self, account_id: int, expiry_date: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE vpn_transactions SET expiry_date = ? WHERE id = ?",
                (expiry_date.isoformat(), int(account_id)),
            )

    # ------------------------------------------------------------------
    # Top-up invoices
    # ------------------------------------------------------------------
    def record_invoice(self, invoice_id: str, telegram_id: str, amount: int, payment_method: str = "QRIS") -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO topup_logs (invoice_id, telegram_id, amount, status, payment_method, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (str(invoice_id), str(telegram_id), int(amount), STATUS_PENDING, payment_method, utc_now().isoformat()),
            )

    def mark_invoice_paid(self, invoice_id: str, telegram_id: str, amount: int) -> bool:
        """Move an invoice to PAID. Returns ``False`` if it already was."""

        now = utc_now().isoformat()
        with self._cursor() as cur:
            cur.execute("SELECT status FROM topup_logs WHERE invoice_id = ?", (str(invoice_id),))
            row = fetch_one(cur)
            if row is None:
                cur.execute(
                    "INSERT INTO topup_logs (invoice_id, telegram_id, amount, status, payment_method, created_at, paid_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (str(invoice_id), str(telegram_id), int(amount), STATUS_PAID, "QRIS", now, now),
                )
                return True
            if row["status"] == STATUS_PAID:
                return False
            cur.execute(
                "UPDATE topup_logs SET status = ?, paid_at = ? WHERE invoice_id = ?",
                (STATUS_PAID, now, str(invoice_id)),
            )
            return True

    def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM topup_logs WHERE invoice_id = ?", (str(invoice_id),))
            return fetch_one(cur)

    def recent_topups(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM topup_logs ORDER BY created_at DESC LIMIT ?", (int(limit),))
            return fetch_all(cur)
