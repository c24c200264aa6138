"""
User-facing notifications raised by the token lifecycle.

The framework only ever emits non-blocking warnings ("reconnect this
connector") with a deep link back to the connector's settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from config.settings import config

logger = logging.getLogger(__name__)


def connector_settings_link(connector_id: str) -> str:
    """Deep link to a connector's settings, e.g. ``/knowledge/connectors#connector/<id>``."""
    return f"{config.connector_settings_path}{connector_id}"


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    level: str = "warning"
    action_url: Optional[str] = None
    action_label: Optional[str] = None


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default notifier: writes notifications to the application log."""

    async def notify(self, notification: Notification) -> None:
        logger.warning(
            "[%s] %s: %s (%s)",
            notification.level,
            notification.title,
            notification.description,
            notification.action_url or "-",
        )


class CollectingNotifier:
    """Keeps notifications in memory so an API layer can drain them."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def drain(self) -> List[Notification]:
        pending, self.notifications = self.notifications, []
        return pending
