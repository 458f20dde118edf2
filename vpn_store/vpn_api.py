"""Client for the per-server VPN management API.

Every server exposes the same family of endpoints, one pair (create, renew)
per protocol, each with its own payload shape. The providers answer HTTP 200
even for failures, so success is read from the ``status``/``code`` fields of
the body. Supporting another protocol means adding one row to
:data:`PROTOCOLS`.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
import urllib3
from requests.exceptions import ConnectionError, SSLError, Timeout
from urllib3.exceptions import InsecureRequestWarning

from .formatting import PRETTY_LINE, escape_html
from .pricing import PERIOD_DAYS

LOGGER = logging.getLogger(__name__)


class VPNAPIError(RuntimeError):
    """Raised when a server rejects a provisioning request."""


class VPNConnectionError(VPNAPIError):
    """Raised when a server cannot be reached."""


PayloadBuilder = Callable[[str, Optional[str], int], Dict[str, Any]]


def _user_payload(username: str, password: Optional[str], days: int) -> Dict[str, Any]:
    return {"user": username, "masaaktif": days}


@dataclass(frozen=True)
class ProtocolInfo:
    id: str
    name: str
    create_path: str
    renew_path: str
    build_payload: PayloadBuilder


PROTOCOLS: Dict[str, ProtocolInfo] = {
    info.id: info
    for info in (
        ProtocolInfo(
            "ssh",
            "SSH",
            "/api/addssh",
            "/api/renew-ssh",
            lambda username, password, days: {"username": username, "password": password, "masa": days},
        ),
        ProtocolInfo("vmess", "VMess", "/api/add-vmess", "/api/renew-vmess", _user_payload),
        ProtocolInfo("vless", "VLess", "/api/add-vless", "/api/renew-vless", _user_payload),
        ProtocolInfo("trojan", "Trojan", "/api/add-trojan", "/api/renew-trojan", _user_payload),
        ProtocolInfo("shadowsocks", "Shadowsocks", "/api/add-ss", "/api/renew-ss", _user_payload),
        ProtocolInfo(
            "socks5",
            "SOCKS5",
            "/api/add-s5",
            "/api/renew-s5",
            lambda username, password, days: {"username": username, "password": password, "masaaktif": days},
        ),
    )
}

# Order in which the add-server flow asks for prices.
PROTOCOL_ORDER: List[str] = list(PROTOCOLS)


def protocol_name(protocol: str) -> str:
    info = PROTOCOLS.get(protocol)
    return info.name if info else protocol.upper()


@dataclass
class ProvisionResult:
    details: str
    password: Optional[str]
    trx_id: str


def is_success(payload: Dict[str, Any]) -> bool:
    status = payload.get("status")
    if status is True or str(status).lower() == "true":
        return True
    return str(payload.get("code")) == "200"


def generate_password() -> str:
    return secrets.token_hex(4)


def format_account_details(protocol: str, data: Dict[str, Any], server_name: str) -> str:
    """Render the fields a provider returned as an HTML block.

    Every field is optional; only those present in ``data`` are shown.
    """
    lines = [
        "✅ <b>Account Created</b>",
        PRETTY_LINE,
        f"<b>Server:</b> {escape_html(server_name)}",
        f"<b>Protocol:</b> {escape_html(protocol_name(protocol))}",
        f"<b>Username:</b> <code>{escape_html(data.get('user') or data.get('username'))}</code>",
    ]
    optional_fields = (
        ("password", "Password"),
        ("domain", "Domain/Host"),
        ("uuid", "UUID"),
        ("https", "TLS Port"),
        ("http", "Non-TLS Port"),
        ("path", "Path"),
    )
    for key, label in optional_fields:
        if data.get(key):
            lines.append(f"<b>{label}:</b> <code>{escape_html(data[key])}</code>")
    expiry = data.get("expiration_date") or data.get("expired_on")
    if expiry:
        lines.append(f"<b>Active Until:</b> <code>{escape_html(expiry)}</code>")
    lines.append(PRETTY_LINE)

    links = data.get("links")
    if isinstance(links, dict) and links:
        lines.append("")
        lines.append("<b>👇 Tap to copy the configuration 👇</b>")
        for key, value in links.items():
            lines.append("")
            lines.append(f"<b>{escape_html(str(key).upper())}:</b>")
            lines.append(f"<code>{escape_html(value)}</code>")
    lines.append("")
    lines.append("Thank you for your purchase!")
    return "\n".join(lines)


class VPNClient:
    """Bearer-token client for one server's management API."""

    def __init__(self, server: Dict[str, Any], *, verify_ssl: bool = True, timeout: int = 30) -> None:
        self.server = server
        self.base_url = str(server.get("domain", "")).rstrip("/") + "/"
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {server.get('api_token', '')}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )
        if not verify_ssl:
            urllib3.disable_warnings(InsecureRequestWarning)

    @property
    def server_name(self) -> str:
        return str(self.server.get("name") or self.server.get("id") or self.base_url)

    def _build_url(self, path: str) -> str:
        try:
            return urljoin(self.base_url, path.lstrip("/"))
        except ValueError as exc:
            LOGGER.error("invalid API address %r for server %s: %s", self.base_url, self.server_name, exc)
            raise VPNConnectionError(f"Failed to connect to server {self.server_name}: invalid server address.") from exc

    def _handle_connection_error(self, exc: Exception) -> None:
        """Convert request failures to a user-friendly VPNConnectionError."""

        base_msg = f"Failed to connect to server {self.server_name}"
        if isinstance(exc, SSLError):
            raise VPNConnectionError(f"{base_msg}: SSL/TLS error.") from exc
        if isinstance(exc, Timeout):
            raise VPNConnectionError(f"{base_msg}: connection timed out.") from exc
        if isinstance(exc, ConnectionError):
            raise VPNConnectionError(f"{base_msg}.") from exc
        raise VPNConnectionError(f"Request to server {self.server_name} failed.") from exc

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._build_url(path)
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout, verify=self.verify_ssl)
        except requests.RequestException as exc:
            LOGGER.warning("request to %s failed: %s", url, exc)
            self._handle_connection_error(exc)
        try:
            body = response.json()
        except ValueError as exc:
            preview = response.text[:200] if response.text else "empty"
            LOGGER.error("invalid JSON from %s (HTTP %s): %s", url, response.status_code, preview)
            raise VPNAPIError("The server returned an invalid response.") from exc
        if not isinstance(body, dict):
            raise VPNAPIError("The server returned an invalid response.")
        if response.status_code != 200 or not is_success(body):
            message = body.get("message") or f"Request failed with HTTP {response.status_code}."
            LOGGER.error("server %s rejected %s: %s", self.server_name, path, body)
            raise VPNAPIError(str(message))
        return body

    def create_account(self, protocol: str, username: str, password: Optional[str] = None) -> ProvisionResult:
        info = PROTOCOLS.get(protocol)
        if info is None:
            raise VPNAPIError(f'Protocol "{protocol}" is not supported.')
        if password is None:
            password = generate_password()
        body = self._post(info.create_path, info.build_payload(username, password, PERIOD_DAYS))
        LOGGER.info("%s account %s created on server %s", protocol, username, self.server_name)
        return ProvisionResult(
            details=format_account_details(protocol, body, self.server_name),
            password=body.get("password") or password,
            trx_id=f"{protocol}-{secrets.token_hex(8)}",
        )

    def renew_account(self, protocol: str, username: str, days: int = PERIOD_DAYS) -> Dict[str, Any]:
        info = PROTOCOLS.get(protocol)
        if info is None:
            raise VPNAPIError(f'Protocol "{protocol}" cannot be renewed.')
        body = self._post(info.renew_path, {"username": username, "days": days})
        LOGGER.info("%s account %s renewed on server %s", protocol, username, self.server_name)
        return body
