"""mudbridge - bridges browser WebSocket clients to a Telnet MUD server."""

__version__ = "0.1.0"
