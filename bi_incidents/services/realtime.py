"""In-process pub/sub for live incident updates."""

import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

INCIDENT_CREATED = "incident-created"
INCIDENT_UPDATED = "incident-updated"
INCIDENT_DELETED = "incident-deleted"

EventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class EventBroadcaster:
    """
    Fire-and-forget event fan-out to UI subscribers.

    A failing subscriber is logged and skipped; publishers never see it.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a function that removes it again."""
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    async def publish(self, event: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber; returns how many handled it cleanly."""
        delivered = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber for '{event}' failed: {e}")
        return delivered


# Shared by the API process
broadcaster = EventBroadcaster()
