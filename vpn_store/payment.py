"""Client for the QRIS payment gateway.

Invoices carry the buyer's Telegram id inside their free-text ``notes``
because the gateway echoes the notes back verbatim in its paid callback.
That text is the only link between a payment and a user.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

LOGGER = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"User ID: (\d+)")
PAID_STATUS = "PAID"


class PaymentGatewayError(RuntimeError):
    """Raised when the gateway cannot create an invoice or return its QR."""


class CallbackRejected(ValueError):
    """Raised when a gateway callback cannot be used to credit a user."""


@dataclass
class PaymentCallback:
    invoice_id: str
    user_id: str
    amount: int


def build_invoice_notes(user_id: str, username: Optional[str]) -> str:
    return f"Balance top-up for User ID: {user_id} (@{username or f'user{user_id}'})"


def extract_user_id(notes: Any) -> Optional[str]:
    if not isinstance(notes, str):
        return None
    match = USER_ID_PATTERN.search(notes)
    return match.group(1) if match else None


def parse_callback(payload: Any) -> PaymentCallback:
    """Validate a paid callback and pull out who paid how much.

    Raises
    ------
    CallbackRejected
        With the message returned to the gateway in the 400 response.
    """
    if not isinstance(payload, dict):
        raise CallbackRejected("Invalid payload or status not PAID")
    invoice_id = payload.get("id")
    notes = payload.get("notes")
    if not invoice_id or payload.get("status") != PAID_STATUS or not notes:
        raise CallbackRejected("Invalid payload or status not PAID")
    user_id = extract_user_id(notes)
    if user_id is None:
        LOGGER.warning("no user id found in invoice notes: %s", notes)
        raise CallbackRejected("User ID not found in notes")
    try:
        amount = int(payload.get("amount"))
    except (TypeError, ValueError) as exc:
        raise CallbackRejected("Invalid amount") from exc
    if amount <= 0:
        raise CallbackRejected("Invalid amount")
    return PaymentCallback(invoice_id=str(invoice_id), user_id=user_id, amount=amount)


class PaymentGatewayClient:
    """Bearer-authenticated JSON client for the invoice API."""

    def __init__(self, base_url: str, username: str, api_token: str, *, timeout: int = 20) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.username = username
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    @staticmethod
    def _describe(exc: requests.RequestException) -> str:
        response = getattr(exc, "response", None)
        if response is not None:
            return response.text[:200]
        return str(exc)

    def create_invoice(self, amount: int, user_id: str, username: Optional[str]) -> Dict[str, Any]:
        """Create an invoice and return the gateway's invoice object."""

        payload = {
            "username": self.username,
            "amount": int(amount),
            "notes": build_invoice_notes(user_id, username),
        }
        try:
            response = self.session.post(self._url("api/v2/invoices"), json=payload, timeout=self.timeout)
            response.raise_for_status()
            invoice = response.json()
        except requests.RequestException as exc:
            LOGGER.error("failed to create invoice for user %s: %s", user_id, self._describe(exc))
            raise PaymentGatewayError("Could not reach the payment server.") from exc
        except ValueError as exc:
            LOGGER.error("invoice response for user %s is not JSON: %s", user_id, response.text[:200])
            raise PaymentGatewayError("Could not reach the payment server.") from exc
        if not isinstance(invoice, dict) or not invoice.get("id"):
            LOGGER.error("invoice response for user %s has no id: %s", user_id, invoice)
            raise PaymentGatewayError("Could not reach the payment server.")
        LOGGER.info("invoice %s created for user %s", invoice["id"], user_id)
        return invoice

    def get_invoice_qr(self, invoice_id: str) -> bytes:
        """Return the PNG QR code for ``invoice_id``."""

        try:
            response = self.session.get(self._url(f"api/v2/invoices/qris/{invoice_id}"), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.error("failed to fetch QR for invoice %s: %s", invoice_id, self._describe(exc))
            raise PaymentGatewayError("Could not load the QRIS image.") from exc
        return response.content
