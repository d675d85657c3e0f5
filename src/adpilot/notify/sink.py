from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from adpilot.util import new_id, now_utc_iso

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    type: str
    title: str
    message: str
    id: str = field(default_factory=lambda: new_id("ntf"))
    read: bool = False
    created_at: str = field(default_factory=now_utc_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "created_at": self.created_at,
        }


def failure_notification(title: str, err: Exception) -> Notification:
    # Low confidence and a missing session are warnings; everything else is an error.
    code = getattr(err, "code", "")
    kind = "warning" if code in {"confidence_too_low", "not_authenticated"} else "error"
    return Notification(type=kind, title=title, message=str(err))


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None:
        """Deliver one user-facing message. Must never raise."""


class MemoryNotificationSink:
    """Keeps the newest `limit` notifications, newest first, for the UI to poll."""

    def __init__(self, limit: int = 500) -> None:
        self.notifications: deque[Notification] = deque(maxlen=limit)

    async def send(self, notification: Notification) -> None:
        self.notifications.appendleft(notification)

    def unread(self) -> list[Notification]:
        return [n for n in self.notifications if not n.read]

    def mark_read(self, notification_id: str) -> bool:
        for n in self.notifications:
            if n.id == notification_id:
                n.read = True
                return True
        return False


class FanoutNotificationSink:
    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    async def send(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception as e:  # noqa: BLE001 - one broken sink must not block the rest
                logger.warning("Notification sink %s failed: %s", type(sink).__name__, e)
