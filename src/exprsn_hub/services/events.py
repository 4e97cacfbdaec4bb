"""In-process publish/subscribe channel for real-time events.

Persistence operations publish here (notifications, status transitions, site
lifecycle) and the WebSocket layer subscribes.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]

NOTIFICATION = "notification"
SERVICE_STATUS_UPDATE = "service-status-update"
SITE_ADDED = "site-added"
SITE_REMOVED = "site-removed"
SITE_RELOADED = "site-reloaded"
ROUTES_CHANGED = "routes-changed"


class EventBus:
    """Topic-based fan-out to async handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``topic`` and return a function that removes it."""
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to every subscriber of ``topic`` in subscription order.

        A failing subscriber is logged and does not prevent delivery to the others.
        """
        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(payload)
            except Exception:
                logger.exception("Event handler for %s failed", topic)
