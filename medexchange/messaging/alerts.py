"""
New-message alerts.

When a message arrives that the user is not reading right now, every
registered NewMessageAlert is told about it (sound, vibration, desktop
notification, push).  Alerts are best-effort: a failing handler is logged
and never affects reconciliation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from medexchange.messaging.models import Message

logger = logging.getLogger("messaging.alerts")


class NewMessageAlert(ABC):
    """Abstract alert handler."""

    alert_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def notify(self, message: Message, counterparty_id: str, unread_count: int) -> None:
        """Signal one incoming message."""


class LogAlert(NewMessageAlert):
    """Default handler: writes the alert to the log."""

    alert_name = "log"

    async def notify(self, message: Message, counterparty_id: str, unread_count: int) -> None:
        logger.info(
            "New message from %s (%d unread): %s",
            counterparty_id, unread_count, message.preview_text()[:80] or "(empty)",
        )


class AlertRegistry:
    """Registry of active alert handlers, keyed by alert_name."""

    def __init__(self) -> None:
        self._alerts: dict[str, NewMessageAlert] = {}

    def register(self, alert: NewMessageAlert) -> None:
        self._alerts[alert.alert_name] = alert
        logger.info("Registered new-message alert: %s", alert.alert_name)

    def unregister(self, alert_name: str) -> None:
        self._alerts.pop(alert_name, None)

    @property
    def registered_alerts(self) -> list[str]:
        return list(self._alerts.keys())

    async def alert_all(self, message: Message, counterparty_id: str, unread_count: int) -> None:
        for name, alert in list(self._alerts.items()):
            try:
                await alert.notify(message, counterparty_id, unread_count)
            except Exception as exc:
                logger.warning("Alert '%s' failed for message %s: %s", name, message.id, exc)
