"""Per-user conversation state for multi-step text input.

A user has at most one pending action. Starting a flow replaces whatever was
pending, pressing any inline button cancels it, and finishing or aborting a
flow removes it. Nothing is persisted: a restart forgets every pending flow.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, Optional

KIND_TOPUP_AMOUNT = "topup_amount"
KIND_ADD_SERVER = "add_server"
KIND_EDIT_SERVER = "edit_server"
KIND_BROADCAST = "broadcast"
KIND_ADD_BALANCE = "add_balance"
KIND_SET_ROLE = "set_role"
KIND_CREATE_VPN = "create_vpn"

ADMIN_KINDS = frozenset({KIND_ADD_SERVER, KIND_EDIT_SERVER, KIND_BROADCAST, KIND_ADD_BALANCE, KIND_SET_ROLE})


@dataclass(frozen=True)
class Interaction:
    """What a handler needs to know about the message or button press."""

    user_id: str
    chat_id: int
    message_id: Optional[int] = None
    username: Optional[str] = None


@dataclass(frozen=True)
class PendingAction:
    kind: str
    step: Optional[str]
    chat_id: int
    message_id: Optional[int]
    data: Dict[str, Any] = field(default_factory=dict)


class ConversationRegistry:
    """Thread-safe map of user id to :class:`PendingAction`."""

    def __init__(self) -> None:
        self._actions: Dict[str, PendingAction] = {}
        self._lock = threading.Lock()
        self._user_locks: Dict[str, threading.RLock] = {}

    def begin(
        self,
        user_id: str,
        kind: str,
        *,
        chat_id: int,
        message_id: Optional[int],
        step: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> PendingAction:
        action = PendingAction(kind=kind, step=step, chat_id=chat_id, message_id=message_id, data=dict(data or {}))
        with self._lock:
            self._actions[str(user_id)] = action
        return action

    def current(self, user_id: str) -> Optional[PendingAction]:
        with self._lock:
            return self._actions.get(str(user_id))

    def advance(self, user_id: str, step: Optional[str], **data: Any) -> PendingAction:
        with self._lock:
            action = self._actions.get(str(user_id))
            if action is None:
                raise KeyError(str(user_id))
            merged = dict(action.data)
            merged.update(data)
            action = replace(action, step=step, data=merged)
            self._actions[str(user_id)] = action
            return action

    def complete(self, user_id: str) -> Optional[PendingAction]:
        with self._lock:
            return self._actions.pop(str(user_id), None)

    cancel = complete

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Serialise processing of one user's updates."""

        with self._lock:
            lock = self._user_locks.setdefault(str(user_id), threading.RLock())
        with lock:
            yield

    def __len__(self) -> int:
        with self._lock:
            return len(self._actions)
