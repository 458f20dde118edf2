"""User accounts and balances kept in a single JSON document.

The document holds ``users`` keyed by Telegram id and global ``settings``.
Every mutation is a read-modify-write performed under one process-wide lock
and persisted with an atomic file replace, so two updates can never lose
each other's changes and a balance never changes without its ledger entry.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .pricing import utc_now

LOGGER = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_USER, ROLE_ADMIN)

TX_TOPUP_GATEWAY = "topup_gateway"
TX_TOPUP_MANUAL = "topup_manual"
TX_VPN_PURCHASE = "pembelian_vpn"
TX_VPN_RENEWAL = "perpanjang_vpn"

DEFAULT_TOPUP_SETTINGS = {"min_amount": 10000, "max_amount": 1000000}


class UserNotFoundError(KeyError):
    """Raised when an operation references an unknown user id."""


@dataclass
class BalanceUpdate:
    user: Dict[str, Any]
    previous_balance: int
    applied: bool = True

    @property
    def new_balance(self) -> int:
        return int(self.user["balance"])


def _now() -> str:
    return utc_now().isoformat()


def _default_document() -> Dict[str, Any]:
    return {"users": {}, "settings": {"topup": dict(DEFAULT_TOPUP_SETTINGS)}}


class UserStore:
    """Persistent user store backed by one JSON file."""

    def __init__(self, path: str, *, admin_id: Optional[str] = None) -> None:
        self.path = Path(path)
        self.admin_id = str(admin_id) if admin_id else None
        self._lock = threading.RLock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _default_document()
        with self.path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
        document.setdefault("users", {})
        document.setdefault("settings", {}).setdefault("topup", dict(DEFAULT_TOPUP_SETTINGS))
        return document

    def _save(self, document: Dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".db-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @contextmanager
    def _editing(self) -> Iterator[Dict[str, Any]]:
        """Hold the lock for a full read-modify-write cycle."""

        with self._lock:
            document = self._load()
            yield document
            self._save(document)

    # ------------------------------------------------------------------
    def ensure_user(self, user_id: str, username: Optional[str] = None) -> bool:
        """Register ``user_id`` if needed. Returns ``True`` for a new user."""

        user_id = str(user_id)
        with self._lock:
            document = self._load()
            user = document["users"].get(user_id)
            is_admin = self.admin_id is not None and user_id == self.admin_id
            if user is not None:
                if is_admin and user.get("role") != ROLE_ADMIN:
                    user["role"] = ROLE_ADMIN
                    self._save(document)
                    LOGGER.info("promoted configured admin %s", user_id)
                return False
            document["users"][user_id] = {
                "username": username or f"user{user_id}",
                "balance": 0,
                "role": ROLE_ADMIN if is_admin else ROLE_USER,
                "registered_at": _now(),
                "topup_history": [],
            }
            self._save(document)
        LOGGER.info("registered new user %s (@%s)", user_id, username)
        return True

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            user = self._load()["users"].get(str(user_id))
            return copy.deepcopy(user) if user is not None else None

    def is_admin(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        return bool(user) and user.get("role") == ROLE_ADMIN

    def all_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._load()["users"].keys())

    def set_role(self, user_id: str, role: str) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        with self._editing() as document:
            user = document["users"].get(str(user_id))
            if user is None:
                raise UserNotFoundError(str(user_id))
            user["role"] = role
        LOGGER.info("role of user %s set to %s", user_id, role)
        return copy.deepcopy(user)

    def update_balance(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> BalanceUpdate:
        """Apply ``amount`` to the user's balance and append a ledger entry.

        Both changes land in the same write. When ``idempotency_key`` matches
        an existing ledger entry the call is a no-op and ``applied`` is False.
        """
        user_id = str(user_id)
        amount = int(amount)
        with self._lock:
            document = self._load()
            user = document["users"].get(user_id)
            if user is None:
                LOGGER.warning("balance update for unknown user %s", user_id)
                raise UserNotFoundError(user_id)
            history = user.setdefault("topup_history", [])
            previous = int(user.get("balance", 0))
            if idempotency_key is not None and any(
                entry.get("idempotency_key") == idempotency_key for entry in history
            ):
                LOGGER.info("skipping duplicate balance update %s for user %s", idempotency_key, user_id)
                return BalanceUpdate(copy.deepcopy(user), previous, applied=False)

            user["balance"] = previous + amount
            entry: Dict[str, Any] = {
                "amount": amount,
                "type": tx_type,
                "metadata": dict(metadata or {}),
                "date": _now(),
                "new_balance": user["balance"],
            }
            if idempotency_key is not None:
                entry["idempotency_key"] = idempotency_key
            history.append(entry)
            self._save(document)
        LOGGER.info(
            "balance of user %s updated: old=%s new=%s type=%s",
            user_id,
            previous,
            user["balance"],
            tx_type,
        )
        return BalanceUpdate(copy.deepcopy(user), previous)

    # ------------------------------------------------------------------
    def get_topup_settings(self) -> Dict[str, int]:
        with self._lock:
            settings = self._load()["settings"].get("topup") or {}
        return {
            "min_amount": int(settings.get("min_amount", DEFAULT_TOPUP_SETTINGS["min_amount"])),
            "max_amount": int(settings.get("max_amount", DEFAULT_TOPUP_SETTINGS["max_amount"])),
        }
