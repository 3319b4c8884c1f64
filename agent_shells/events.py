from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Set
from asyncio import Queue as AsyncQueue, QueueFull
import time


class EventType(Enum):
    SESSION_CREATED = "session.created"
    SESSION_RESTORED = "session.restored"
    SESSION_RESTARTED = "session.restarted"
    SESSION_UPDATED = "session.updated"
    SESSION_STATUS = "session.status"
    SESSION_EXITED = "session.exited"
    SESSION_REMOVED = "session.removed"


@dataclass
class SessionEvent:
    type: EventType
    session_id: str
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class EventBus:
    """In-process lifecycle event bus.

    Subscribers get their own bounded queue; a subscriber that stops draining
    is dropped rather than allowed to stall publishers.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: Set[AsyncQueue] = set()
        self._max_queue = max_queue

    def subscribe(self) -> AsyncQueue:
        q: AsyncQueue = AsyncQueue(maxsize=self._max_queue)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: AsyncQueue) -> None:
        self._subscribers.discard(q)

    def publish(self, event: SessionEvent) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except QueueFull:
                self._subscribers.discard(q)

    def __len__(self) -> int:
        return len(self._subscribers)
