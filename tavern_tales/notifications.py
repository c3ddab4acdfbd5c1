"""Short-lived user-facing notifications.

Events expire ``ttl`` seconds after they are pushed. Expiry is evaluated
lazily against an injectable clock, so nothing runs in the background.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable

from tavern_tales.models import NotificationCategory, NotificationEvent

NOTIFICATION_TTL = 5.0


class NotificationQueue:
    def __init__(self, ttl: float = NOTIFICATION_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._events: list[NotificationEvent] = []

    def push(self, message: str, category: NotificationCategory = "info") -> NotificationEvent:
        """Queue a new event. Identical messages still get distinct ids."""
        event = NotificationEvent(
            id=f"note-{uuid.uuid4().hex[:12]}",
            message=message,
            category=category,
            created_at=self._clock(),
        )
        self._events.append(event)
        return event

    def dismiss(self, event_id: str) -> bool:
        before = len(self._events)
        self._events = [e for e in self._events if e.id != event_id]
        return len(self._events) != before

    def active(self) -> list[NotificationEvent]:
        """Drop expired events and return the live ones, oldest first."""
        cutoff = self._clock() - self._ttl
        self._events = [e for e in self._events if e.created_at > cutoff]
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self.active())
