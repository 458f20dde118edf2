"""Small wrapper around the Telegram Bot API using :mod:`requests`."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests

LOGGER = logging.getLogger(__name__)


class TelegramAPIError(RuntimeError):
    """Error raised when Telegram returns a failure."""


class TelegramBot:
    """Calls the HTTP Bot API directly.

    Only the methods the store needs are implemented: sending and editing
    text, sending photos, deleting messages, acknowledging callback queries
    and registering the webhook.
    """

    def __init__(self, token: str, *, timeout: int = 20) -> None:
        self.base_url = f"https://api.telegram.org/bot{token}/"
        self.timeout = timeout
        self.session = requests.Session()

    def _request(
        self,
        method: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        payload = {k: v for k, v in (data or {}).items() if v is not None}
        try:
            response = self.session.post(self.base_url + method, data=payload, files=files, timeout=self.timeout)
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramAPIError(f"{method} failed: {exc}") from exc
        if not body.get("ok"):
            raise TelegramAPIError(f"{method} failed: {body.get('description') or body}")
        return body["result"]

    def send_message(
        self,
        chat_id: Any,
        text: str,
        *,
        parse_mode: Optional[str] = "HTML",
        reply_markup: Optional[Dict[str, Any]] = None,
        message_thread_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "sendMessage",
            data={
                "chat_id": chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": json_dumps(reply_markup) if reply_markup is not None else None,
                "message_thread_id": message_thread_id,
                "disable_web_page_preview": "true",
            },
        )

    def edit_message_text(
        self,
        chat_id: Any,
        message_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = "HTML",
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return self._request(
            "editMessageText",
            data={
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": json_dumps(reply_markup) if reply_markup is not None else None,
                "disable_web_page_preview": "true",
            },
        )

    def send_photo(
        self,
        chat_id: Any,
        photo: bytes,
        *,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = "HTML",
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "sendPhoto",
            data={
                "chat_id": chat_id,
                "caption": caption,
                "parse_mode": parse_mode if caption else None,
                "reply_markup": json_dumps(reply_markup) if reply_markup is not None else None,
            },
            files={"photo": ("qris.png", photo, "image/png")},
        )

    def delete_message(self, chat_id: Any, message_id: int) -> None:
        self._request("deleteMessage", data={"chat_id": chat_id, "message_id": message_id})

    def answer_callback_query(self, callback_query_id: str, *, text: Optional[str] = None) -> None:
        self._request("answerCallbackQuery", data={"callback_query_id": callback_query_id, "text": text})

    def set_webhook(self, url: str) -> None:
        self._request("setWebhook", data={"url": url})
        LOGGER.info("webhook registered at %s", url.split("/bot")[0])


def json_dumps(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"))
