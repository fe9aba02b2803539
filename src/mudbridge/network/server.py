"""WebSocket listener that creates one proxy session per client."""

import asyncio
import json
import time
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Any
from uuid import UUID

import structlog
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from mudbridge.config import Settings
from mudbridge.exceptions import BindError
from mudbridge.network.protocol import CLOSE_GOING_AWAY, CLOSE_TRY_AGAIN_LATER
from mudbridge.network.session import ProxySession

logger = structlog.get_logger(__name__)

HEALTH_PATH = "/health"


class ProxyServer:
    """
    Accepts browser WebSocket connections and bridges each to the Telnet server.

    The session registry is only mutated by the connection handler, on
    connect and on disconnect; everything else reads it.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """
        Initialize the proxy server.

        Args:
            settings: Proxy settings, passed on to every session
        """
        self._settings = settings or Settings()
        self._server: Server | None = None
        self._sessions: dict[UUID, ProxySession] = {}
        self._running = False
        self._shutting_down = False
        self._started_at: float | None = None
        self.total_sessions = 0
        self.rejected_connections = 0

        logger.info("proxy_server_initialized", telnet_target=self._settings.telnet_target)

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._running

    @property
    def session_count(self) -> int:
        """Number of sessions currently registered."""
        return len(self._sessions)

    @property
    def port(self) -> int | None:
        """Port the listener is bound to, or None when stopped."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def uptime(self) -> float:
        """Seconds since the listener started."""
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """
        Bind the WebSocket listener.

        Args:
            host: Bind address, defaults to WS_HOST
            port: Listen port, defaults to WS_PORT (0 picks a free port)

        Raises:
            BindError: The address is unavailable
        """
        if self._running:
            logger.warning("proxy_server_already_running")
            return

        host = host or self._settings.ws_host
        port = self._settings.ws_port if port is None else port

        logger.info("proxy_server_starting", host=host, port=port)

        try:
            self._server = await serve(
                self._handle_connection,
                host,
                port,
                process_request=self._process_request,
                ping_interval=None,
                max_size=self._settings.max_message_size,
            )
        except OSError as e:
            logger.error("proxy_server_start_failed", host=host, port=port, error=str(e))
            raise BindError(host, port, str(e)) from e

        self._running = True
        self._shutting_down = False
        self._started_at = time.monotonic()

        logger.info(
            "proxy_server_started",
            host=host,
            port=self.port,
            telnet_target=self._settings.telnet_target,
            max_connections=self._settings.max_connections,
        )

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Answer plain HTTP health checks before the WebSocket handshake."""
        if request.path.split("?", 1)[0] != HEALTH_PATH:
            return None

        response = connection.respond(HTTPStatus.OK, json.dumps(self.health()) + "\n")
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json"
        return response

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """
        Handle a new client connection.

        Args:
            websocket: The accepted WebSocket connection
        """
        if self._shutting_down:
            await websocket.close(CLOSE_GOING_AWAY, "Server shutting down")
            return

        if len(self._sessions) >= self._settings.max_connections:
            self.rejected_connections += 1
            logger.warning(
                "connection_limit_exceeded",
                client=websocket.remote_address,
                limit=self._settings.max_connections,
                rejected_total=self.rejected_connections,
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "Server at capacity")
            return

        session = ProxySession(websocket, self._settings)
        self._sessions[session.id] = session
        self.total_sessions += 1

        if self._settings.enable_connection_logs:
            logger.info(
                "client_connected",
                session_id=str(session.id),
                client=session.client_address,
                total_connections=len(self._sessions),
            )

        try:
            await session.run()
        finally:
            self._sessions.pop(session.id, None)
            if self._settings.enable_connection_logs:
                logger.info(
                    "client_disconnected",
                    session_id=str(session.id),
                    code=session.close_code,
                    reason=session.close_reason,
                    total_connections=len(self._sessions),
                )

    async def shutdown(self, grace_ms: int | None = None) -> None:
        """
        Stop accepting clients and close every session.

        Sessions get ``grace_ms`` (default SHUTDOWN_GRACE) to close
        cleanly; any still open afterwards are aborted. The listener is
        released in every case.
        """
        if not self._running or self._server is None:
            logger.warning("proxy_server_not_running")
            return

        grace = (self._settings.shutdown_grace if grace_ms is None else grace_ms) / 1000
        self._shutting_down = True
        logger.info("proxy_server_stopping", active_sessions=len(self._sessions), grace=grace)

        server = self._server
        try:
            server.close(close_connections=False)

            sessions = list(self._sessions.values())
            if sessions:
                closers = [
                    asyncio.create_task(session.close(CLOSE_GOING_AWAY, "Server shutting down"))
                    for session in sessions
                ]
                _, pending = await asyncio.wait(closers, timeout=grace)
                if pending:
                    stragglers = [session for session in sessions if not session.is_closed]
                    logger.warning("sessions_force_closed", count=len(stragglers))
                    await asyncio.gather(
                        *(session.abort() for session in stragglers), return_exceptions=True
                    )
                    await asyncio.gather(*pending, return_exceptions=True)
        finally:
            await server.wait_closed()
            self._server = None
            self._running = False
            self._shutting_down = False

        logger.info("proxy_server_stopped", total_sessions=self.total_sessions)

    async def broadcast(self, message: str, color: str = "YELLOW") -> int:
        """
        Send a status notice to every connected client.

        Returns:
            Number of sessions the notice was sent to
        """
        sessions = [s for s in self._sessions.values() if not s.is_closed]
        await asyncio.gather(*(session.send_notice(message, color) for session in sessions))
        return len(sessions)

    def get_session(self, session_id: UUID) -> ProxySession | None:
        """Retrieve a session by ID."""
        return self._sessions.get(session_id)

    def get_sessions(self) -> list[ProxySession]:
        """Get all registered sessions."""
        return list(self._sessions.values())

    def _status(self) -> str:
        if self._shutting_down:
            return "stopping"
        return "healthy" if self._running else "stopped"

    def health(self) -> dict[str, Any]:
        """Health summary served on /health."""
        return {
            "status": self._status(),
            "timestamp": datetime.now(UTC).isoformat(),
            "telnet_target": self._settings.telnet_target,
            "active_connections": len(self._sessions),
            "max_connections": self._settings.max_connections,
            "uptime": round(self.uptime, 3),
        }

    def diagnostics(self) -> dict[str, Any]:
        """Health summary plus per-session details."""
        return {
            **self.health(),
            "total_sessions": self.total_sessions,
            "rejected_connections": self.rejected_connections,
            "sessions": [session.diagnostics() for session in self._sessions.values()],
        }

    async def __aenter__(self) -> "ProxyServer":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        if self._running:
            await self.shutdown()
