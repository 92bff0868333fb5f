"""Bounded notification channel for asynchronous session errors."""

import logging
import queue
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import Config


@dataclass(frozen=True)
class Notification:
    """An error raised outside the caller's thread."""

    source: str
    message: str
    error: Optional[Exception] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"[{self.source}] {self.message}"


class Notifier:
    """
    Non-blocking publisher of session errors.

    Publishing never blocks: when the queue is full the notification is
    dropped and only logged.
    """

    def __init__(self, maxsize: int = None):  # type: ignore
        self.queue: "queue.Queue[Notification]" = queue.Queue(maxsize=maxsize or Config.NOTIFY_QUEUE_SIZE)
        self.logger = logging.getLogger(__name__)
        self.dropped = 0

    def publish(self, source: str, error: Exception) -> bool:
        """Queue a notification; returns False if it was dropped."""
        notification = Notification(source=source, message=str(error), error=error)
        self.logger.error(f"{source}: {error}")

        try:
            self.queue.put_nowait(notification)
            return True
        except queue.Full:
            self.dropped += 1
            self.logger.warning(f"Notification queue full, dropped: {notification}")
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Next notification, or None if none arrives in time."""
        try:
            return self.queue.get(timeout=timeout) if timeout else self.queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self):
        """Pop every pending notification."""
        items = []
        while True:
            item = self.get()
            if item is None:
                return items
            items.append(item)
