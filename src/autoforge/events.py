"""Status and log events published by the engine.

Components publish ``Event`` records into an ``EventChannel``; the API
layer (or a test) drains them. Publishing never blocks: when the channel is
full the oldest event is dropped and counted.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROJECT_STATUS_CHANGED = "project_status_changed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    SANDBOX_LOG = "sandbox_log"


@dataclass(frozen=True)
class Event:
    """A single published event.

    Attributes:
        event_type: What happened
        project_name: Project the event belongs to, if any
        payload: Event-specific data
        timestamp: When the event was created
    """

    event_type: EventType
    project_name: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "projectName": self.project_name,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventChannel:
    """Bounded, thread-safe FIFO of events.

    Example:
        >>> channel = EventChannel(maxsize=100)
        >>> channel.publish(EventType.TASK_STARTED, "demo", {"subtask_id": "t1"})
        >>> [e.event_type for e in channel.drain()]
        [<EventType.TASK_STARTED: 'task_started'>]
    """

    def __init__(self, maxsize: int = 1000) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._maxsize = maxsize
        self._events: Deque[Event] = deque()
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def dropped_count(self) -> int:
        """Number of events discarded because the channel was full."""
        return self._dropped

    def put_nowait(self, event: Event) -> None:
        with self._lock:
            if len(self._events) >= self._maxsize:
                self._events.popleft()
                self._dropped += 1
                if self._dropped == 1 or self._dropped % 100 == 0:
                    logger.warning(
                        f"[Events] Channel full ({self._maxsize}), dropped {self._dropped} events so far"
                    )
            self._events.append(event)

    def publish(
        self,
        event_type: EventType,
        project_name: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """Create and enqueue an event; returns it."""
        event = Event(event_type=event_type, project_name=project_name, payload=dict(payload or {}))
        self.put_nowait(event)
        return event

    def get(self) -> Optional[Event]:
        """Pop the oldest event, or None when empty."""
        with self._lock:
            if not self._events:
                return None
            return self._events.popleft()

    def drain(self) -> List[Event]:
        """Pop every queued event, oldest first."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
