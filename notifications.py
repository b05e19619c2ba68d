"""Per-instance notification log.

Each tracker, monitor and coordinator owns one ``NotificationLog``; nothing is
shared across instances or runs. Subscribers are optional and are called
synchronously in publish order.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from models import utc_now

logger = logging.getLogger(__name__)

NotificationKind = Literal[
    "iteration-start",
    "cost-update",
    "entropy-detected",
    "usage-update",
    "threshold-info",
    "threshold-warning",
    "threshold-critical",
    "reset",
    "reset-complete",
    "cleanup-error",
    "emergency-reset",
]


class Notification(BaseModel):
    kind: NotificationKind
    timestamp: str = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[Notification], None]


class NotificationLog:
    """Ordered list of notifications published by one component."""

    def __init__(self, source: str) -> None:
        self.source = source
        self._events: list[Notification] = []
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, kind: NotificationKind, **data: Any) -> Notification:
        event = Notification(kind=kind, data=data)
        self._events.append(event)
        logger.debug("[%s] %s %s", self.source, kind, data)
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning("[%s] subscriber failed on %s: %s", self.source, kind, e)
        return event

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        return [e for e in self._events if e.kind == kind]

    def clear(self) -> None:
        self._events.clear()

    def __iter__(self):
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)
