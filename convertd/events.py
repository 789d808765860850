"""
Publish/subscribe channel for conversion progress.

Subscribers register a plain callable per event kind (or for every kind).
Async consumers such as the websocket endpoint pass ``queue.put_nowait`` and
drain the queue on their own task.
"""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("convertd.events")


class EventKind(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConversionEvent:
    kind: EventKind
    item_id: int
    file_name: Optional[str] = None
    progress: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"type": self.kind.value, "item_id": self.item_id}
        if self.file_name is not None:
            data["file_name"] = self.file_name
        if self.progress is not None:
            data["progress"] = self.progress
        if self.error is not None:
            data["error"] = self.error
        return data


Handler = Callable[[ConversionEvent], None]


class EventPublisher:
    def __init__(self):
        self._subscribers: dict[int, tuple[Optional[EventKind], Handler]] = {}
        self._tokens = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, kind: Optional[EventKind], handler: Handler) -> int:
        """Register ``handler`` for ``kind`` (None = all kinds); returns a token."""
        token = next(self._tokens)
        self._subscribers[token] = (EventKind(kind) if kind is not None else None, handler)
        return token

    def unsubscribe(self, token: int) -> bool:
        return self._subscribers.pop(token, None) is not None

    def publish(self, event: ConversionEvent) -> None:
        # Copy so handlers may unsubscribe while being notified
        for token, (kind, handler) in list(self._subscribers.items()):
            if kind is not None and kind != event.kind:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {token} failed on '{event.kind.value}' for item {event.item_id}")
