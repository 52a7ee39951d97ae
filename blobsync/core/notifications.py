"""User-visible notifications published by the cache core."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from blobsync.core.logging import get_logger

logger = get_logger("blobsync.notifications")


class NotificationType(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """A message meant for the user, not just the log."""

    title: str
    message: str
    severity: NotificationType = NotificationType.INFO
    duration: timedelta = timedelta(seconds=10)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationHandler = Callable[[Notification], None]


class NotificationBus:
    """Thread-safe fan-out of notifications to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[NotificationHandler] = []

    def subscribe(self, handler: NotificationHandler) -> Callable[[], None]:
        """Register ``handler`` and return a function that unregisters it."""
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, notification: Notification) -> None:
        """Deliver ``notification`` to every subscriber.

        A failing subscriber is logged and does not prevent delivery to the
        others.
        """
        logger.info(
            "notification_published",
            title=notification.title,
            message=notification.message,
            severity=notification.severity.value,
        )
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(notification)
            except Exception:
                logger.exception("notification_handler_failed", title=notification.title)
