"""Price lookup and account expiry arithmetic.

Servers price each protocol per 30-day period; purchases and renewals always
cover exactly one period.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

PERIOD_DAYS = 30


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form every stored timestamp uses."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def protocol_price(server: Optional[Dict[str, Any]], protocol: str) -> Optional[int]:
    """Return the 30-day price of ``protocol`` on ``server``.

    Parameters
    ----------
    server : dict or None
        Server configuration as stored by :class:`~vpn_store.servers.ServerStore`
    protocol : str
        Protocol identifier

    Returns
    -------
    int or None
        The price, or ``None`` when the server does not offer the protocol
    """
    if not server:
        return None
    entry = (server.get("protocols") or {}).get(protocol)
    if not isinstance(entry, dict):
        return None
    try:
        price = int(entry.get("price_per_30_days", 0))
    except (TypeError, ValueError):
        LOGGER.warning("invalid price for %s on server %s", protocol, server.get("id"))
        return None
    return price if price > 0 else None


def new_expiry(now: datetime, days: int = PERIOD_DAYS) -> datetime:
    return now + timedelta(days=days)


def extend_expiry(current_expiry: str, now: datetime, days: int = PERIOD_DAYS) -> datetime:
    """Compute the expiry after a renewal.

    A still-active account is extended from its current expiry; an account
    that already lapsed restarts from ``now`` so the buyer gets a full period.
    """
    try:
        expiry = datetime.fromisoformat(current_expiry)
    except (TypeError, ValueError):
        LOGGER.warning("unparseable expiry %r, renewing from now", current_expiry)
        expiry = now
    if expiry.tzinfo is not None:
        expiry = expiry.replace(tzinfo=None)
    return max(expiry, now) + timedelta(days=days)


def days_left(expiry_date: str, now: datetime) -> int:
    """Whole days until ``expiry_date`` (rounded up), never negative."""

    try:
        expiry = datetime.fromisoformat(expiry_date)
    except (TypeError, ValueError):
        return 0
    if expiry.tzinfo is not None:
        expiry = expiry.replace(tzinfo=None)
    remaining = (expiry - now).total_seconds() / 86400
    return max(0, math.ceil(remaining))
