"""Message formatting helpers shared by the handlers."""
from __future__ import annotations

import html
import re
from typing import Any, Dict

PRETTY_LINE = "------------------------------------------"


def format_rupiah(amount: Any) -> str:
    """Format an integer amount as Indonesian Rupiah, e.g. ``Rp 10.000``."""

    try:
        value = int(amount or 0)
    except (TypeError, ValueError):
        value = 0
    sign = "-" if value < 0 else ""
    grouped = f"{abs(value):,}".replace(",", ".")
    return f"{sign}Rp {grouped}"


def back_button(text: str = "⬅️ Back", callback_data: str = "menu:main") -> Dict[str, str]:
    return {"text": text, "callback_data": callback_data}


def keyboard(*rows) -> Dict[str, Any]:
    """Build an ``inline_keyboard`` reply markup from button rows."""

    return {"inline_keyboard": [list(row) for row in rows]}


def escape_html(value: Any) -> str:
    return html.escape("" if value is None else str(value), quote=False)


def censor_username(username: str) -> str:
    """Hide most of a username for public group notifications."""

    name = (username or "").lstrip("@")
    if len(name) <= 3:
        return name[:1] + "***"
    return name[:3] + "***"


def censor_balance(amount: Any) -> str:
    """Keep the leading digit of a formatted amount and mask the rest."""

    formatted = format_rupiah(amount)
    prefix, _, digits = formatted.partition("Rp ")
    if not digits:
        return formatted
    masked = digits[0] + re.sub(r"\d", "x", digits[1:])
    return f"{prefix}Rp {masked}"
