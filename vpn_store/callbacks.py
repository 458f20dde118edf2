"""Inline button payloads.

Buttons carry ``"<area>:<name>[:<arg>...]"`` strings. They are decoded once,
at the edge, into an :class:`Action` plus its positional arguments; the
router then dispatches on the enum member instead of slicing strings.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

SEPARATOR = ":"
MAX_CALLBACK_BYTES = 64


class Action(enum.Enum):
    MAIN_MENU = ("menu:main", 0)
    VPN_MENU = ("menu:vpn", 0)
    TOPUP_MENU = ("topup:menu", 0)

    VPN_SELECT_SERVER = ("vpn:buy", 0)
    VPN_SELECT_PROTOCOL = ("vpn:protocol", 1)
    VPN_ENTER_USERNAME = ("vpn:username", 2)
    VPN_MY_ACCOUNTS = ("vpn:accounts", 0)
    VPN_RENEW_SELECT = ("vpn:renew", 0)
    VPN_RENEW_CONFIRM = ("vpn:renew_confirm", 1)
    VPN_RENEW_EXECUTE = ("vpn:renew_do", 1)

    ADMIN_PANEL = ("admin:panel", 0)
    ADMIN_USERS = ("admin:users", 0)
    ADMIN_ADD_BALANCE = ("admin:add_balance", 0)
    ADMIN_SET_ROLE = ("admin:set_role", 0)
    ADMIN_SERVERS = ("admin:servers", 0)
    ADMIN_ADD_SERVER = ("admin:add_server", 0)
    ADMIN_EDIT_SELECT = ("admin:edit_select", 0)
    ADMIN_DELETE_SELECT = ("admin:delete_select", 0)
    ADMIN_EDIT_SERVER = ("admin:edit", 1)
    ADMIN_EDIT_PROPERTY = ("admin:edit_prop", 2)
    ADMIN_EDIT_PRICE = ("admin:edit_price", 2)
    ADMIN_DELETE_CONFIRM = ("admin:delete", 1)
    ADMIN_DELETE_EXECUTE = ("admin:delete_do", 1)
    ADMIN_BROADCAST = ("admin:broadcast", 0)
    ADMIN_TRANSACTIONS = ("admin:transactions", 0)

    def __init__(self, token: str, arity: int) -> None:
        self.token = token
        self.arity = arity

    @property
    def admin_only(self) -> bool:
        return self.token.startswith("admin:")

    def encode(self, *args: object) -> str:
        return encode(self, *args)


_BY_TOKEN: Dict[str, Action] = {action.token: action for action in Action}


@dataclass(frozen=True)
class Callback:
    action: Action
    args: Tuple[str, ...] = ()


def encode(action: Action, *args: object) -> str:
    if len(args) != action.arity:
        raise ValueError(f"{action.name} takes {action.arity} argument(s), got {len(args)}")
    parts = [action.token]
    for arg in args:
        text = str(arg)
        if not text or SEPARATOR in text:
            raise ValueError(f"invalid callback argument {text!r}")
        parts.append(text)
    data = SEPARATOR.join(parts)
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"callback data too long: {data}")
    return data


def decode(data: Optional[str]) -> Optional[Callback]:
    """Return the decoded callback, or ``None`` for unknown payloads."""

    if not data:
        return None
    parts = data.split(SEPARATOR)
    if len(parts) < 2:
        return None
    action = _BY_TOKEN.get(SEPARATOR.join(parts[:2]))
    args = tuple(parts[2:])
    if action is None or len(args) != action.arity or any(not arg for arg in args):
        return None
    return Callback(action, args)
