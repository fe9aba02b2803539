"""Proxy sessions pairing one WebSocket client with one Telnet backend."""

import asyncio
import codecs
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import structlog
from websockets.exceptions import ConnectionClosed

from mudbridge.config import Settings
from mudbridge.exceptions import WriteQueueOverflow
from mudbridge.network.backend import EVENT_QUEUE_SIZE, TelnetBackendConnection
from mudbridge.network.events import Event, EventType
from mudbridge.network.protocol import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    chunk_bytes,
    ensure_line_ending,
    filter_telnet_iac,
    status_notice,
)
from mudbridge.network.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from websockets.asyncio.server import ServerConnection

logger = structlog.get_logger(__name__)

# Upper bound for the WebSocket closing handshake before the transport is aborted
WEBSOCKET_CLOSE_TIMEOUT = 2.0


class SessionState(str, Enum):
    """Session state enumeration."""

    CONNECTING = "connecting"  # Waiting for the first backend connection
    ACTIVE = "active"  # Relaying in both directions
    RECONNECTING = "reconnecting"  # Backend lost, client kept open
    CLOSING = "closing"  # Tearing down both legs
    CLOSED = "closed"


EventHandler = Callable[[Event], Awaitable[None]]


class ProxySession:
    """
    One end-to-end pairing of a browser WebSocket and a Telnet connection.

    Every state transition happens inside the session's control loop
    (``run()``) or in ``close()``. Both the client reader and the backend
    deliver typed events to a single queue, so client and backend bytes are
    relayed in arrival order and a reconnect can never race a close.
    """

    def __init__(
        self,
        websocket: "ServerConnection",
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize a new session.

        Args:
            websocket: The accepted client connection
            settings: Proxy settings; the Telnet target comes from here
        """
        self._settings = settings or Settings()
        self.id: UUID = uuid4()
        self.websocket = websocket
        self.client_address = _format_address(getattr(websocket, "remote_address", None))
        self.state = SessionState.CONNECTING
        self.created_at = datetime.now(UTC)
        self.last_activity = datetime.now(UTC)

        self._events: asyncio.Queue[Event] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.backend = TelnetBackendConnection(
            self._settings.telnet_host,
            self._settings.telnet_port,
            self._settings,
            events=self._events,
            session_id=str(self.id),
        )
        self.rate_limiter = RateLimiter(
            max_messages=self._settings.rate_limit_max,
            window=self._settings.rate_limit_window / 1000,
        )

        self.messages_in = 0
        self.messages_out = 0
        self.bytes_in = 0
        self.bytes_out = 0
        self.rate_limit_violations = 0
        self.dropped_messages = 0
        self.close_code: int | None = None
        self.close_reason = ""

        self._consecutive_violations = 0
        self._last_client_activity = 0.0
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._log = logger.bind(session_id=str(self.id), client=self.client_address)

        self._handlers: dict[EventType, EventHandler] = {
            EventType.CLIENT_MESSAGE: self._on_client_message,
            EventType.CLIENT_CLOSED: self._on_client_closed,
            EventType.BACKEND_CONNECTED: self._on_backend_connected,
            EventType.BACKEND_DATA: self._on_backend_data,
            EventType.BACKEND_LOST: self._on_backend_lost,
            EventType.BACKEND_RECONNECTED: self._on_backend_reconnected,
            EventType.BACKEND_FAILED: self._on_backend_failed,
            EventType.IDLE_TIMEOUT: self._on_idle_timeout,
            EventType.PONG_TIMEOUT: self._on_pong_timeout,
            EventType.SHUTDOWN: self._on_shutdown,
        }

        self._log_info("session_created", telnet_target=self._settings.telnet_target)

    def _log_info(self, event: str, **kwargs: Any) -> None:
        if self._settings.enable_connection_logs:
            self._log.info(event, **kwargs)

    @property
    def is_closed(self) -> bool:
        """Check if the session has finished tearing down."""
        return self.state is SessionState.CLOSED

    def set_state(self, state: SessionState) -> None:
        """
        Update session state.

        Args:
            state: New session state
        """
        old_state = self.state
        self.state = state
        self._log_info(
            "session_state_changed",
            old_state=old_state.value,
            new_state=state.value,
        )

    def update_activity(self) -> None:
        """Record inbound client activity, restarting the idle timer."""
        self.last_activity = datetime.now(UTC)
        self._last_client_activity = asyncio.get_running_loop().time()

    async def run(self) -> None:
        """
        Drive the session until it is closed.

        Starts the backend connection, the client reader and the timers, then
        processes events one at a time. Returns once the session is CLOSED.
        """
        if self.state is not SessionState.CONNECTING:
            self._log.warning("session_run_ignored", state=self.state.value)
            return

        self._last_client_activity = asyncio.get_running_loop().time()
        self._tasks.append(asyncio.create_task(self._read_client(), name=f"client-{self.id}"))
        if self._settings.connection_timeout > 0:
            self._tasks.append(asyncio.create_task(self._watch_idle(), name=f"idle-{self.id}"))
        if self._settings.ping_interval > 0:
            self._tasks.append(asyncio.create_task(self._ping_loop(), name=f"ping-{self.id}"))

        await self.send_notice(f"Connecting to {self._settings.telnet_target}...")
        self.backend.start()

        try:
            while self.state is not SessionState.CLOSED:
                event = await self._events.get()
                if self.state in (SessionState.CLOSING, SessionState.CLOSED):
                    continue
                if self._settings.enable_message_logs:
                    self._log.debug("session_event", event=event.type.value)
                await self._handlers[event.type](event)
        except Exception as e:
            self._log.error("session_error", error=str(e), exc_info=True)
            await self.close(CLOSE_INTERNAL_ERROR, "Internal proxy error")
        finally:
            if self.state is not SessionState.CLOSED:
                await self.close(CLOSE_INTERNAL_ERROR, "Session ended")

    async def _on_client_message(self, event: Event) -> None:
        data = event.data
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data or b"")

        self.update_activity()
        self.messages_in += 1
        self.bytes_in += len(raw)

        if self._settings.enable_message_logs:
            self._log.info("client_message", bytes=len(raw), preview=repr(raw[:80]))

        if not self.rate_limiter.allow():
            self.rate_limit_violations += 1
            self._consecutive_violations += 1
            self._log.warning(
                "rate_limit_exceeded",
                consecutive=self._consecutive_violations,
                limit=self._settings.rate_limit_max,
                window_ms=self._settings.rate_limit_window,
            )
            if self._consecutive_violations >= self._settings.rate_limit_violations:
                await self.send_notice("Rate limit exceeded repeatedly; disconnecting.", "RED")
                await self.close(CLOSE_POLICY_VIOLATION, "Rate limit exceeded")
            else:
                await self.send_notice("Rate limit exceeded; message dropped.", "YELLOW")
            return

        self._consecutive_violations = 0
        if self._settings.append_crlf:
            raw = ensure_line_ending(raw)

        try:
            queued = await self.backend.send(raw)
        except WriteQueueOverflow as e:
            self._log.error("backend_write_overflow", pending=e.pending, limit=e.limit)
            await self.send_notice("Game server is not keeping up; disconnecting.", "RED")
            await self.close(CLOSE_INTERNAL_ERROR, "Backend write queue overflow")
            return

        if not queued:
            self.dropped_messages += 1
            await self.send_notice("Game server unavailable; input dropped.", "YELLOW")

    async def _on_client_closed(self, event: Event) -> None:
        self._log_info("client_disconnected", reason=event.reason)
        await self.close(CLOSE_NORMAL, "Client disconnected")

    async def _on_backend_connected(self, event: Event) -> None:
        self.set_state(SessionState.ACTIVE)
        await self.send_notice("Connected.", "GREEN")

    async def _on_backend_data(self, event: Event) -> None:
        data = event.data
        if not isinstance(data, bytes):
            return
        if self._settings.filter_telnet_iac:
            data = filter_telnet_iac(data)
        if data:
            await self._send_to_client(data)

    async def _on_backend_lost(self, event: Event) -> None:
        self.set_state(SessionState.RECONNECTING)
        self._decoder.reset()
        await self.send_notice("Connection to game server lost; reconnecting...", "YELLOW")

    async def _on_backend_reconnected(self, event: Event) -> None:
        self.set_state(SessionState.ACTIVE)
        await self.send_notice("Reconnected.", "GREEN")

    async def _on_backend_failed(self, event: Event) -> None:
        self._log.error("session_backend_failed", reason=event.reason, retries=event.attempt)
        await self.send_notice(
            f"Could not reach the game server after {event.attempt} retries ({event.reason}).",
            "RED",
        )
        await self.close(CLOSE_INTERNAL_ERROR, "Backend connection error")

    async def _on_idle_timeout(self, event: Event) -> None:
        self._log_info("session_idle_timeout", timeout_ms=self._settings.connection_timeout)
        await self.send_notice("Idle timeout; closing connection.", "YELLOW")
        await self.close(CLOSE_NORMAL, "Idle timeout")

    async def _on_pong_timeout(self, event: Event) -> None:
        self._log.warning("session_pong_timeout", timeout_ms=self._settings.pong_timeout)
        await self.close(CLOSE_INTERNAL_ERROR, "Pong timeout")

    async def _on_shutdown(self, event: Event) -> None:
        pass

    async def _send_to_client(self, data: bytes) -> None:
        """Forward backend bytes, split into frames of at most BUFFER_SIZE bytes."""
        text_frames = self._settings.send_text_frames
        try:
            for chunk in chunk_bytes(data, self._settings.buffer_size):
                if text_frames:
                    text = self._decoder.decode(chunk)
                    if text:
                        await self.websocket.send(text)
                else:
                    await self.websocket.send(chunk)
                self.messages_out += 1
                self.bytes_out += len(chunk)
        except ConnectionClosed as e:
            # The client reader reports the close; nothing left to deliver to
            self._log.debug("client_send_failed", error=str(e))
            return

        if self._settings.enable_message_logs:
            self._log.info("backend_message", bytes=len(data), preview=repr(data[:80]))

    async def send_notice(self, message: str, color: str = "CYAN") -> None:
        """
        Send a human readable status line to the client as a text frame.

        Args:
            message: Status text, e.g. "Reconnected."
            color: ANSI color name for the line
        """
        if not self._settings.status_notices or self.state is SessionState.CLOSED:
            return
        try:
            await self.websocket.send(status_notice(message, color))
        except ConnectionClosed as e:
            self._log.debug("notice_send_failed", error=str(e))

    async def _read_client(self) -> None:
        """Feed client frames into the event queue until the client goes away."""
        reason = "Client disconnected"
        try:
            async for message in self.websocket:
                await self._events.put(Event(EventType.CLIENT_MESSAGE, data=message))
        except ConnectionClosed as e:
            reason = f"Client connection error: {e}"
            self._log.warning("client_connection_error", error=str(e))
        await self._events.put(Event(EventType.CLIENT_CLOSED, reason=reason))

    async def _watch_idle(self) -> None:
        """Post IDLE_TIMEOUT once the client has been silent for CONNECTION_TIMEOUT."""
        loop = asyncio.get_running_loop()
        timeout = self._settings.connection_timeout / 1000
        while True:
            remaining = self._last_client_activity + timeout - loop.time()
            if remaining <= 0:
                await self._events.put(Event(EventType.IDLE_TIMEOUT))
                return
            await asyncio.sleep(remaining)

    async def _ping_loop(self) -> None:
        """Ping the client every PING_INTERVAL; post PONG_TIMEOUT if it stops answering."""
        interval = self._settings.ping_interval / 1000
        timeout = self._settings.pong_timeout / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                pong_waiter = await self.websocket.ping()
                await asyncio.wait_for(pong_waiter, timeout=timeout)
            except TimeoutError:
                await self._events.put(Event(EventType.PONG_TIMEOUT))
                return
            except ConnectionClosed:
                return
            self._log.debug("client_pong_received")

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """
        Close the session: stop timers, close the backend, then the WebSocket.

        Safe to call multiple times and from several tasks; later calls wait
        for the first one to finish and have no further side effects.

        Args:
            code: WebSocket close code sent to the client
            reason: Close reason sent to the client
        """
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            await self._closed.wait()
            return

        self.set_state(SessionState.CLOSING)
        self.close_code = code
        self.close_reason = reason

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

        await self.backend.close()
        await self._close_websocket(code, reason)

        self.set_state(SessionState.CLOSED)
        self._closed.set()
        # Wake the control loop if it is waiting for an event
        try:
            self._events.put_nowait(Event(EventType.SHUTDOWN, reason=reason))
        except asyncio.QueueFull:
            pass

        self._log_info(
            "session_closed",
            code=code,
            reason=reason,
            duration=round((datetime.now(UTC) - self.created_at).total_seconds(), 3),
            messages_in=self.messages_in,
            messages_out=self.messages_out,
            bytes_in=self.bytes_in,
            bytes_out=self.bytes_out,
        )

    async def _close_websocket(self, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(
                self.websocket.close(code=code, reason=reason),
                timeout=WEBSOCKET_CLOSE_TIMEOUT,
            )
        except (ConnectionClosed, TimeoutError, OSError) as e:
            self._log.debug("websocket_close_failed", error=str(e))
            self._abort_transport()

    def _abort_transport(self) -> None:
        transport = getattr(self.websocket, "transport", None)
        if transport is not None:
            transport.abort()

    async def abort(self) -> None:
        """
        Force termination: drop both transports, then finish closing.

        Also unblocks a close() that is still flushing to a stalled server.
        """
        if self.state is SessionState.CLOSED:
            return
        self._log.warning("session_aborted", state=self.state.value)
        self._abort_transport()
        self.backend.abort()
        await self.close(CLOSE_INTERNAL_ERROR, "Session aborted")

    async def wait_closed(self) -> None:
        """Wait until the session reaches CLOSED."""
        await self._closed.wait()

    def diagnostics(self) -> dict[str, Any]:
        """Snapshot of the session for health and debugging output."""
        return {
            "session_id": str(self.id),
            "state": self.state.value,
            "client": self.client_address,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "messages_in": self.messages_in,
            "messages_out": self.messages_out,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "rate_limit_violations": self.rate_limit_violations,
            "dropped_messages": self.dropped_messages,
            "backend": self.backend.diagnostics(),
        }

    def __str__(self) -> str:
        """String representation of session."""
        return f"ProxySession({self.id}, {self.state.value})"

    def __repr__(self) -> str:
        """Detailed representation of session."""
        return (
            f"ProxySession(id={self.id}, client={self.client_address}, "
            f"state={self.state.value}, backend={self.backend.state.value})"
        )


def _format_address(address: Any) -> str:
    """Render a socket peer address as host:port."""
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else "unknown"
