"""In-process event bus shared by the store, the coordinator and the UI layer."""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

NOTIFICATION = "notification"
SETTINGS_CHANGED = "settings_changed"
STREAM_COMPLETED = "stream_completed"


@dataclass
class Notification:
    """A transient message meant for the user."""

    level: str  # "success" | "error" | "info"
    text: str


class EventBus:
    """Topic-based publish/subscribe.

    Handlers run synchronously in subscription order. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: dict[str, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Register a handler and return a function that removes it."""
        self._handlers[topic].append(handler)

        def unsubscribe():
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Any = None) -> None:
        for handler in list(self._handlers[topic]):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for %r failed", topic)

    def notify(self, level: str, text: str) -> None:
        self.publish(NOTIFICATION, Notification(level, text))

    def success(self, text: str) -> None:
        self.notify("success", text)

    def error(self, text: str) -> None:
        self.notify("error", text)
