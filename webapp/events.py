"""
webapp/events.py
In-process event bus standing in for window-level custom events
(`resume_booking`, `notifications:updated`).
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

RESUME_BOOKING = "resume_booking"
NOTIFICATIONS_UPDATED = "notifications:updated"

Listener = Callable[[Any], Any]


class EventBus:
    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe; returns the matching unsubscribe callable."""
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    async def emit(self, event: str, detail: Any = None) -> None:
        """Deliver to every listener. A failing listener never stops the rest."""
        for listener in list(self._listeners[event]):
            try:
                result = listener(detail)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Listener for {event} failed: {e}")
