"""Typed events processed by each proxy session's control loop."""

from dataclasses import dataclass
from enum import Enum


class EventType(str, Enum):
    """Event type enumeration."""

    CLIENT_MESSAGE = "client_message"  # Frame received from the browser
    CLIENT_CLOSED = "client_closed"  # WebSocket leg is gone
    BACKEND_CONNECTED = "backend_connected"  # First Telnet connect succeeded
    BACKEND_DATA = "backend_data"  # Chunk read from the Telnet server
    BACKEND_LOST = "backend_lost"  # Telnet leg dropped, reconnect starting
    BACKEND_RECONNECTED = "backend_reconnected"
    BACKEND_FAILED = "backend_failed"  # Connect or reconnect attempts exhausted
    IDLE_TIMEOUT = "idle_timeout"
    PONG_TIMEOUT = "pong_timeout"
    SHUTDOWN = "shutdown"  # Wakes the control loop after an external close


@dataclass(frozen=True)
class Event:
    """A single occurrence delivered to a session's event queue."""

    type: EventType
    data: bytes | str | None = None
    reason: str = ""
    attempt: int = 0

    def __repr__(self) -> str:
        size = len(self.data) if self.data is not None else 0
        return f"Event({self.type.value}, bytes={size}, reason={self.reason!r})"
