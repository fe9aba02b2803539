"""TCP connection to the Telnet game server with reconnect and write queuing."""

import asyncio
import contextlib
import socket
from collections import deque
from enum import Enum
from typing import Any

import structlog

from mudbridge.config import Settings
from mudbridge.exceptions import (
    BackendConnectError,
    BackendError,
    BackendTimeout,
    ConnectionRefused,
    DnsFailure,
    WriteQueueOverflow,
)
from mudbridge.network.events import Event, EventType
from mudbridge.network.protocol import KEEPALIVE_NOP, backoff_delay

logger = structlog.get_logger(__name__)

EVENT_QUEUE_SIZE = 256

# Upper bound for flushing the socket on close before the transport is aborted
BACKEND_CLOSE_TIMEOUT = 1.0


class BackendState(str, Enum):
    """Backend connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"  # Initial connect, including its retries
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"  # Lost after being connected, retrying
    FAILED = "failed"  # Attempts exhausted
    CLOSED = "closed"  # Closed by the owner, never reused


class TelnetBackendConnection:
    """
    One TCP connection to the Telnet server, owned by a single session.

    The Telnet stream is treated as opaque bytes: nothing is negotiated or
    decoded here. Inbound chunks and lifecycle changes are delivered as
    ``Event`` records on ``events``; outbound data goes through a bounded
    FIFO queue drained by a writer task, so ``write()`` never blocks.
    """

    def __init__(
        self,
        host: str,
        port: int,
        settings: Settings | None = None,
        events: "asyncio.Queue[Event] | None" = None,
        session_id: str | None = None,
    ) -> None:
        """
        Initialize the backend connection.

        Args:
            host: Telnet server hostname
            port: Telnet server port
            settings: Proxy settings (timeouts, backoff, queue bound)
            events: Queue receiving backend events; a private one is created if omitted
            session_id: Owning session, used for log context
        """
        self._settings = settings or Settings()
        self.host = host
        self.port = port
        self.events: asyncio.Queue[Event] = (
            events if events is not None else asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        )
        self._log = logger.bind(backend=f"{host}:{port}", session_id=session_id)

        self._state = BackendState.DISCONNECTED
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._closing_writer: asyncio.StreamWriter | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._io_tasks: list[asyncio.Task[str]] = []
        self._closing = False

        self._pending: deque[bytes] = deque()
        self._pending_bytes = 0
        self._write_ready = asyncio.Event()

        self.reconnect_attempts = 0
        self.dropped_writes = 0
        self.dropped_bytes = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.last_seen: float | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> BackendState:
        """Get current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the TCP connection is established."""
        return self._state is BackendState.CONNECTED

    @property
    def pending_bytes(self) -> int:
        """Bytes queued but not yet handed to the socket."""
        return self._pending_bytes

    def _log_info(self, event: str, **kwargs: Any) -> None:
        if self._settings.enable_connection_logs:
            self._log.info(event, **kwargs)

    async def connect(
        self,
        host: str | None = None,
        port: int | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        """
        Make one connection attempt to the Telnet server.

        On success the state becomes CONNECTED and the read, write and
        keepalive loops start. Queued writes are flushed first.

        Args:
            host: Override the target host
            port: Override the target port
            timeout_ms: Connect timeout, defaults to TELNET_CONNECT_TIMEOUT

        Raises:
            ConnectionRefused: The server refused the connection
            BackendTimeout: No connection within the timeout
            DnsFailure: The host name could not be resolved
            BackendConnectError: Any other socket error
            BackendError: The connection is already established or was closed
        """
        if self._state is BackendState.CLOSED:
            raise BackendError("Backend connection is closed")
        if self._state is BackendState.CONNECTED:
            raise BackendError("Backend connection is already established")

        self.host = host or self.host
        self.port = port or self.port
        timeout_ms = timeout_ms or self._settings.connect_timeout

        previous = self._state
        if previous is not BackendState.RECONNECTING:
            self._state = BackendState.CONNECTING

        self._log_info("backend_connecting", host=self.host, port=self.port)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=timeout_ms / 1000,
            )
        except BaseException as e:
            if previous not in (BackendState.CONNECTING, BackendState.RECONNECTING):
                previous = BackendState.DISCONNECTED
            if self._state is not BackendState.CLOSED:
                self._state = previous
            mapped = self._classify_error(e, timeout_ms)
            if mapped is e:
                raise
            raise mapped from e

        if self._closing:
            writer.close()
            raise BackendError("Backend connection closed during connect")

        self._reader = reader
        self._writer = writer
        self._state = BackendState.CONNECTED
        self.last_seen = asyncio.get_running_loop().time()
        self.last_error = None
        self._enable_tcp_keepalive(writer)
        self._start_io()

        self._log_info(
            "backend_connected",
            host=self.host,
            port=self.port,
            pending_bytes=self._pending_bytes,
        )

    def _classify_error(self, error: BaseException, timeout_ms: int) -> BaseException:
        """Map a low level connect error onto the backend error taxonomy."""
        if isinstance(error, TimeoutError):
            return BackendTimeout(
                self.host, self.port, f"no connection within {timeout_ms} ms"
            )
        if isinstance(error, socket.gaierror):
            return DnsFailure(self.host, self.port, str(error))
        if isinstance(error, ConnectionRefusedError):
            return ConnectionRefused(self.host, self.port, str(error) or "connection refused")
        if isinstance(error, OSError):
            return BackendConnectError(self.host, self.port, str(error))
        # Cancellation and anything unexpected propagate unchanged
        return error

    def _enable_tcp_keepalive(self, writer: asyncio.StreamWriter) -> None:
        if self._settings.keepalive_interval <= 0:
            return
        sock = writer.get_extra_info("socket")
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    def start(self) -> None:
        """
        Connect in the background, retrying with backoff.

        Emits BACKEND_CONNECTED on success or BACKEND_FAILED once every
        attempt has failed. Later losses are retried automatically.
        """
        if self._state is BackendState.CLOSED:
            raise BackendError("Backend connection is closed")
        if self._state is BackendState.CONNECTED:
            self._log.warning("backend_already_connected")
            return
        if self._supervisor is not None and not self._supervisor.done():
            self._log.warning("backend_already_started", state=self._state.value)
            return

        self._state = BackendState.CONNECTING
        self._supervisor = asyncio.create_task(
            self._connect_initial(), name=f"backend-connect-{self.host}:{self.port}"
        )

    async def _connect_initial(self) -> None:
        try:
            await self.connect()
        except BackendConnectError as e:
            self.last_error = str(e)
            self._log.warning("backend_connect_failed", attempt=0, error=str(e))
            if not await self._retry():
                await self._fail()
                return

        await self._emit(EventType.BACKEND_CONNECTED)

    async def _reconnect(self, reason: str) -> None:
        await self._emit(EventType.BACKEND_LOST, reason=reason)
        if await self._retry():
            await self._emit(EventType.BACKEND_RECONNECTED)
        else:
            await self._fail()

    async def _retry(self) -> bool:
        """
        Run the backoff schedule.

        Returns:
            True once a connection attempt succeeds, False when attempts run out
        """
        limit = self._settings.max_reconnect_attempts
        for attempt in range(1, limit + 1):
            self.reconnect_attempts = attempt
            delay = backoff_delay(
                attempt, self._settings.reconnect_delay, self._settings.reconnect_max_delay
            )
            self._log_info("backend_retry_scheduled", attempt=attempt, limit=limit, delay=delay)
            await asyncio.sleep(delay)

            try:
                await self.connect()
            except BackendConnectError as e:
                self.last_error = str(e)
                self._log.warning(
                    "backend_connect_failed", attempt=attempt, limit=limit, error=str(e)
                )
                continue

            self.reconnect_attempts = 0
            return True
        return False

    async def _fail(self) -> None:
        self._state = BackendState.FAILED
        dropped = self._clear_pending()
        self._log.error(
            "backend_failed",
            attempts=self._settings.max_reconnect_attempts,
            error=self.last_error,
            dropped_bytes=dropped,
        )
        await self._emit(
            EventType.BACKEND_FAILED,
            reason=self.last_error or "unreachable",
            attempt=self.reconnect_attempts,
        )

    def write(self, data: bytes) -> bool:
        """
        Queue bytes for the Telnet server without blocking.

        While connecting or reconnecting, data waits in the queue up to
        WRITE_QUEUE_LIMIT bytes; beyond that it is dropped. When no
        connection is being attempted, data is always dropped.

        Args:
            data: Raw bytes to send

        Returns:
            True if the data was queued, False if it was dropped

        Raises:
            WriteQueueOverflow: The socket is connected but cannot keep up
        """
        if not data:
            return True

        limit = self._settings.write_queue_limit
        if self._state in (
            BackendState.CONNECTED,
            BackendState.CONNECTING,
            BackendState.RECONNECTING,
        ):
            if self._pending_bytes + len(data) > limit:
                if self._state is BackendState.CONNECTED:
                    raise WriteQueueOverflow(self._pending_bytes + len(data), limit)
                self._drop(data)
                return False

            self._pending.append(data)
            self._pending_bytes += len(data)
            self._write_ready.set()
            return True

        self._drop(data)
        return False

    async def send(self, data: bytes) -> bool:
        """
        Queue bytes like write(), then yield so the writer task can hand
        them to the socket.

        Only data the socket cannot accept stays pending, so a burst of
        input on a healthy connection never reaches WRITE_QUEUE_LIMIT.

        Returns:
            True if the data was queued, False if it was dropped

        Raises:
            WriteQueueOverflow: The socket is connected but cannot keep up
        """
        queued = self.write(data)
        await asyncio.sleep(0)
        return queued

    def _drop(self, data: bytes) -> None:
        self.dropped_writes += 1
        self.dropped_bytes += len(data)
        self._log.debug(
            "backend_write_dropped",
            state=self._state.value,
            bytes=len(data),
            dropped_writes=self.dropped_writes,
        )

    def _clear_pending(self) -> int:
        dropped = self._pending_bytes
        if self._pending:
            self.dropped_writes += len(self._pending)
            self.dropped_bytes += dropped
        self._pending.clear()
        self._pending_bytes = 0
        self._write_ready.clear()
        return dropped

    def _start_io(self) -> None:
        tasks = [
            asyncio.create_task(self._read_loop(), name="backend-read"),
            asyncio.create_task(self._write_loop(), name="backend-write"),
        ]
        if self._settings.keepalive_interval > 0:
            tasks.append(asyncio.create_task(self._keepalive_loop(), name="backend-keepalive"))
        for task in tasks:
            task.add_done_callback(self._on_io_done)
        self._io_tasks = tasks

        if self._pending:
            self._write_ready.set()

    def _stop_io(self) -> list[asyncio.Task[str]]:
        tasks, self._io_tasks = self._io_tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None
        return tasks

    def _on_io_done(self, task: "asyncio.Task[str]") -> None:
        if task.cancelled() or self._closing or self._state is not BackendState.CONNECTED:
            return

        error = task.exception()
        reason = f"{type(error).__name__}: {error}" if error else task.result()
        if error is not None:
            self._log.error("backend_io_error", task=task.get_name(), error=str(error))

        self._stop_io()
        self._state = BackendState.RECONNECTING
        self.last_error = reason
        self._log.warning(
            "backend_connection_lost",
            reason=reason,
            pending_bytes=self._pending_bytes,
        )
        self._supervisor = asyncio.create_task(
            self._reconnect(reason), name=f"backend-reconnect-{self.host}:{self.port}"
        )

    async def _read_loop(self) -> str:
        """Read raw chunks until the server goes away."""
        reader = self._reader
        assert reader is not None
        loop = asyncio.get_running_loop()

        while True:
            try:
                data = await reader.read(self._settings.buffer_size)
            except (ConnectionError, OSError) as e:
                return f"read failed: {e}"

            if not data:
                return "connection closed by server"

            self.bytes_received += len(data)
            self.last_seen = loop.time()
            await self._emit(EventType.BACKEND_DATA, data=data)

    async def _write_loop(self) -> str:
        """Drain the pending queue onto the socket in FIFO order."""
        writer = self._writer
        assert writer is not None

        try:
            while True:
                await self._write_ready.wait()
                self._write_ready.clear()
                while self._pending:
                    chunk = self._pending.popleft()
                    self._pending_bytes -= len(chunk)
                    writer.write(chunk)
                    self.bytes_sent += len(chunk)
                    await writer.drain()
        except (ConnectionError, OSError) as e:
            return f"write failed: {e}"

    async def _keepalive_loop(self) -> str:
        """Ping the server periodically and give up on a silent connection."""
        writer = self._writer
        assert writer is not None
        loop = asyncio.get_running_loop()
        interval = self._settings.keepalive_interval / 1000
        timeout = self._settings.keepalive_timeout / 1000

        while True:
            await asyncio.sleep(interval)
            idle = loop.time() - (self.last_seen or 0.0)
            if timeout and idle > timeout:
                return f"keepalive timeout after {idle:.1f}s of silence"
            writer.write(KEEPALIVE_NOP)
            self._log.debug("backend_keepalive_sent", idle=round(idle, 3))

    async def _emit(self, event_type: EventType, **kwargs: Any) -> None:
        await self.events.put(Event(event_type, **kwargs))

    async def close(self) -> None:
        """
        Close the connection and stop all background work.

        Cancels pending backoff sleeps and in-flight connect attempts.
        Safe to call multiple times.
        """
        if self._closing:
            return
        self._closing = True

        writer = self._closing_writer = self._writer
        supervisor, self._supervisor = self._supervisor, None
        tasks = self._stop_io()
        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
            tasks.append(supervisor)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if writer is not None:
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=BACKEND_CLOSE_TIMEOUT)
            except TimeoutError:
                self._log.warning(
                    "backend_close_timeout",
                    timeout=BACKEND_CLOSE_TIMEOUT,
                    unsent_bytes=writer.transport.get_write_buffer_size(),
                )
                writer.transport.abort()
            except (ConnectionError, OSError) as e:
                self._log.debug("backend_close_error", error=str(e))
            finally:
                self._closing_writer = None

        dropped = self._clear_pending()
        self._state = BackendState.CLOSED
        self._log_info(
            "backend_closed",
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
            dropped_bytes=dropped,
        )

    def abort(self) -> None:
        """
        Drop the socket without flushing unsent data.

        Used when the server will not read what is already buffered. A
        close() in progress finishes promptly afterwards.
        """
        for writer in (self._writer, self._closing_writer):
            if writer is not None:
                writer.transport.abort()
        self._log.warning("backend_aborted", pending_bytes=self._pending_bytes)

    def diagnostics(self) -> dict[str, Any]:
        """Snapshot of the connection for health and debugging output."""
        return {
            "target": f"{self.host}:{self.port}",
            "state": self._state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "pending_bytes": self._pending_bytes,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "dropped_writes": self.dropped_writes,
            "last_error": self.last_error,
        }

    def __repr__(self) -> str:
        """Detailed representation of the backend connection."""
        return (
            f"TelnetBackendConnection(target={self.host}:{self.port}, "
            f"state={self._state.value}, pending={self._pending_bytes})"
        )
