"""Wire protocol — decouples terminal lifecycle from observers.

Events flow from the session registry and the command path to whoever
is listening: the ``/ws/events`` websocket, the CLI, tests. Each observer
subscribes and gets its own bounded queue; a subscriber that stops reading
loses its oldest events instead of growing without limit.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000
LAST_OUTPUT_CHARS = 500

T = TypeVar("T")


class EventType(enum.Enum):
    SESSION_CREATED = "session_created"
    SESSION_CLOSED = "session_closed"
    SHARED_CHANGED = "shared_changed"
    PTY_EXIT = "pty_exit"
    COMMAND_BEGIN = "command_begin"
    COMMAND_END = "command_end"
    STATUS = "status"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form, as sent over ``/ws/events``."""
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


def offer_nowait(q: asyncio.Queue[T], item: T) -> bool:
    """Put without blocking, evicting the oldest entry when full."""
    dropped = False
    while True:
        try:
            q.put_nowait(item)
            return dropped
        except asyncio.QueueFull:
            q.get_nowait()
            dropped = True


class Wire:
    """Broadcast bus: terminal core -> observers."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed = False

    def send(self, event: WireEvent) -> None:
        """Deliver ``event`` to every subscriber; a no-op once closed."""
        if self._closed:
            return
        for q in self._subscribers:
            if offer_nowait(q, event):
                logger.debug("Wire subscriber lagging, dropped oldest event")

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self.send(WireEvent(type=event_type, data=data))

    def send_status(self, message: str) -> None:
        self._emit(EventType.STATUS, message=message)

    def send_error(self, error: str) -> None:
        self._emit(EventType.ERROR, error=error)

    def send_session_created(self, session_id: str, pid: int | None, cwd: str) -> None:
        self._emit(EventType.SESSION_CREATED, session_id=session_id, pid=pid, cwd=cwd)

    def send_session_closed(self, session_id: str, reason: str) -> None:
        self._emit(EventType.SESSION_CLOSED, session_id=session_id, reason=reason)

    def send_shared_changed(self, session_id: str | None) -> None:
        """Announce which session now receives agent commands (None: none)."""
        self._emit(EventType.SHARED_CHANGED, session_id=session_id)

    def send_pty_exit(
        self, session_id: str, exit_code: int | None, last_output: str = ""
    ) -> None:
        """A shell exited on its own; ``last_output`` keeps its final chars."""
        self._emit(
            EventType.PTY_EXIT,
            session_id=session_id,
            exit_code=exit_code,
            last_output=last_output[-LAST_OUTPUT_CHARS:],
        )

    def send_command_begin(self, session_id: str, command: str) -> None:
        self._emit(EventType.COMMAND_BEGIN, session_id=session_id, command=command)

    def send_command_end(
        self,
        session_id: str,
        command: str,
        exit_code: int | None,
        timed_out: bool,
        duration: float,
    ) -> None:
        self._emit(
            EventType.COMMAND_END,
            session_id=session_id,
            command=command,
            exit_code=exit_code,
            timed_out=timed_out,
            duration=round(duration, 3),
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Return a fresh queue receiving every later event; None means closed."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue(maxsize=self._queue_size)
        if self._closed:
            q.put_nowait(None)
        else:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Wake every subscriber with the None sentinel."""
        self._closed = True
        for q in self._subscribers:
            offer_nowait(q, None)
        self._subscribers.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
