"""Input validation for text typed into the bot.

Every multi-step flow funnels raw message text through these helpers before
it touches a store or an external API.
"""
from __future__ import annotations

import re
from typing import Optional, Tuple

# Limits
MAX_STRING_LENGTH = 500
MAX_NUMERIC_VALUE = 100_000_000
MAX_SERVER_ID_LENGTH = 32
SERVER_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")
VPN_USERNAME_PATTERN = re.compile(r"^[a-z0-9]{3,32}$")
URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)


def sanitize_string(value: str, max_length: int = MAX_STRING_LENGTH) -> str:
    """Normalise a typed message before it is validated.

    Parameters
    ----------
    value : str
        Raw message text. Anything that is not a string becomes ``""``.
    max_length : int
        Characters kept from the start of the text.

    Returns
    -------
    str
        The truncated text without null bytes or surrounding whitespace.
    """
    if not isinstance(value, str):
        return ""
    return value[:max_length].replace("\x00", "").strip()


def validate_numeric(value: str, min_value: int = 0, max_value: int = MAX_NUMERIC_VALUE) -> Tuple[bool, Optional[int]]:
    """Parse a whole number and check it against inclusive bounds.

    Returns ``(True, number)`` on success and ``(False, None)`` otherwise.
    """
    try:
        num = int(str(value).strip())
    except (ValueError, TypeError):
        return False, None
    if min_value <= num <= max_value:
        return True, num
    return False, None


def parse_amount(value: str, min_value: int, max_value: int) -> Tuple[bool, Optional[int]]:
    """Parse a currency amount typed with thousands separators.

    Every non-digit character is dropped first, so ``"Rp 50.000"`` reads as
    ``50000``. Input without any digit is rejected.
    """
    if not isinstance(value, str):
        return False, None
    digits = re.sub(r"\D", "", value)
    if not digits:
        return False, None
    return validate_numeric(digits, min_value=min_value, max_value=max_value)


def is_valid_server_id(value: str) -> bool:
    """Server ids double as file names: lowercase letters, digits and dashes."""

    return bool(value) and bool(SERVER_ID_PATTERN.match(value))


def is_valid_vpn_username(value: str) -> bool:
    return bool(value) and bool(VPN_USERNAME_PATTERN.match(value))


def validate_url(url: str) -> bool:
    """Server API base URLs must be absolute http(s) URLs without spaces."""

    if not url:
        return False
    return bool(URL_PATTERN.match(url))
