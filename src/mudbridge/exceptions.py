"""Exception hierarchy for the mudbridge proxy."""


class ProxyError(Exception):
    """Base class for all proxy errors."""

    pass


class BindError(ProxyError):
    """Raised when the WebSocket listener cannot bind its address."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        super().__init__(f"Cannot bind {host}:{port}: {reason}")


class BackendError(ProxyError):
    """Base class for errors on the Telnet leg."""

    pass


class BackendConnectError(BackendError):
    """Raised when a connection attempt to the Telnet server fails."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"{host}:{port}: {reason}")


class ConnectionRefused(BackendConnectError):
    """The Telnet server actively refused the connection."""

    pass


class BackendTimeout(BackendConnectError):
    """The connection attempt did not complete within the connect timeout."""

    pass


class DnsFailure(BackendConnectError):
    """The Telnet server host name could not be resolved."""

    pass


class WriteQueueOverflow(BackendError):
    """Raised when pending backend writes exceed the configured bound."""

    def __init__(self, pending: int, limit: int) -> None:
        self.pending = pending
        self.limit = limit
        super().__init__(f"Write queue overflow: {pending} bytes pending, limit {limit}")
