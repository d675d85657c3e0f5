from __future__ import annotations

import logging
from typing import Any

import httpx

from adpilot.notify.sink import Notification


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

_ICONS = {"success": "[OK]", "warning": "[WARN]", "error": "[FAIL]", "info": "[INFO]"}


async def _send_message(
    client: httpx.AsyncClient,
    *,
    token: str,
    chat_id: int,
    text: str,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
    r = await client.post(f"{TELEGRAM_API}/bot{token}/sendMessage", json=payload, timeout=20)
    r.raise_for_status()
    return r.json()


def format_notification(notification: Notification) -> str:
    icon = _ICONS.get(notification.type, "[INFO]")
    return f"{icon} {notification.title}\n{notification.message}"


class TelegramNotificationSink:
    """
    Push notifications into a single Telegram chat.
    Delivery failures are logged and dropped; they never fail the action that triggered them.
    """

    def __init__(self, token: str, chat_id: int, http_client: httpx.AsyncClient | None = None):
        self.token = token
        self.chat_id = chat_id
        self._http = http_client

    async def send(self, notification: Notification) -> None:
        text = format_notification(notification)
        try:
            if self._http is not None:
                await _send_message(self._http, token=self.token, chat_id=self.chat_id, text=text)
            else:
                async with httpx.AsyncClient() as client:
                    await _send_message(client, token=self.token, chat_id=self.chat_id, text=text)
        except httpx.HTTPError as e:
            logger.warning("Telegram delivery failed: %s: %s", type(e).__name__, e)
