"""Network layer for mudbridge - WebSocket listener, sessions and Telnet backends."""

from mudbridge.network.backend import BackendState, TelnetBackendConnection
from mudbridge.network.events import Event, EventType
from mudbridge.network.protocol import (
    ANSI_COLORS,
    colorize,
    status_notice,
)
from mudbridge.network.rate_limiter import RateLimiter
from mudbridge.network.server import ProxyServer
from mudbridge.network.session import ProxySession, SessionState

__all__ = [
    "BackendState",
    "Event",
    "EventType",
    "ProxyServer",
    "ProxySession",
    "RateLimiter",
    "SessionState",
    "TelnetBackendConnection",
    "ANSI_COLORS",
    "colorize",
    "status_notice",
]
