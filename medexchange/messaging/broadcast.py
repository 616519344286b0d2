"""
Ledger Broadcast: same-process change notifications for mounted views.

Notifications carry no state.  A listener learns *that* something changed
(and optionally for which counterparty) and re-reads the ledger.  Because
the ledger always persists before it notifies, a listener can never read a
value older than the notification it received.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("messaging.broadcast")


class LedgerEvent(str, Enum):
    ORDER_CHANGED = "order-changed"
    UNREAD_CHANGED = "unread-changed"
    PREVIEW_CHANGED = "preview-changed"


# listener(event, key) where key is a counterparty id or None for "everything"
LedgerListener = Callable[[LedgerEvent, Optional[str]], None]


class LedgerBroadcaster:
    """
    Fan-out of ledger notifications to registered listeners.

    Delivery is synchronous and fire-and-forget: a failing listener is
    logged and skipped, it never blocks the writer or other listeners.
    """

    def __init__(self) -> None:
        self._listeners: dict[int, LedgerListener] = {}
        self._next_token = 0

    def listen(self, listener: LedgerListener) -> Callable[[], None]:
        """Register ``listener``.  Returns a callable that unregisters it."""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def _unsubscribe() -> None:
            self._listeners.pop(token, None)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def notify(self, event: LedgerEvent, key: str | None = None) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event, key)
            except Exception as exc:
                logger.warning(
                    "Ledger listener failed on %s (key=%s): %s",
                    event.value, key, exc,
                )
