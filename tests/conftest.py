"""Shared fixtures for all tests."""

import asyncio
import socket
from collections.abc import Callable
from unittest.mock import Mock

import pytest
from websockets.exceptions import ConnectionClosed

from mudbridge.config import Settings

_CLIENT_GONE = object()


class TelnetStub:
    """Local TCP server standing in for the Telnet game server."""

    def __init__(self, greeting: bytes = b"") -> None:
        self.greeting = greeting
        self.received = bytearray()
        self.connections = 0
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self, port: int = 0) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port or self.port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        if self.greeting:
            writer.write(self.greeting)
        try:
            while data := await reader.read(4096):
                self.received.extend(data)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def send(self, data: bytes) -> None:
        for writer in self._writers:
            if not writer.is_closing():
                writer.write(data)
                await writer.drain()

    def drop_clients(self) -> None:
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    async def stop(self) -> None:
        """Stop listening and drop every client, simulating an outage."""
        if self._server is None:
            return
        self._server.close()
        self.drop_clients()
        await self._server.wait_closed()
        self._server = None


class StalledTelnetStub:
    """Telnet stand-in that accepts connections and never reads from them."""

    def __init__(self) -> None:
        self.connections = 0
        self.port = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self._released = asyncio.Event()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        await self._released.wait()
        writer.transport.abort()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in self._writers:
            writer.transport.abort()
        self._released.set()
        await self._server.wait_closed()
        self._server = None


class FakeWebSocket:
    """In-memory stand-in for a websockets ServerConnection."""

    def __init__(self, remote_address: tuple[str, int] = ("203.0.113.7", 50123)) -> None:
        self.remote_address = remote_address
        self.transport = Mock()
        self.sent: list[bytes | str] = []
        self.answer_pings = True
        self.close_calls = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._incoming: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def feed(self, message: bytes | str) -> None:
        """Queue a frame as if the browser had sent it."""
        self._incoming.put_nowait(message)

    def disconnect(self) -> None:
        """End the inbound stream as if the browser went away."""
        self._incoming.put_nowait(_CLIENT_GONE)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> bytes | str:
        item = await self._incoming.get()
        if item is _CLIENT_GONE:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def send(self, message: bytes | str) -> None:
        if self._closed:
            raise ConnectionClosed(None, None)
        self.sent.append(message)

    async def ping(self) -> "asyncio.Future[float]":
        waiter: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLIENT_GONE)

    @property
    def binary(self) -> bytes:
        """All binary frames joined in order."""
        return b"".join(m for m in self.sent if isinstance(m, bytes))

    @property
    def notices(self) -> list[str]:
        """Text frames sent to the client."""
        return [m for m in self.sent if isinstance(m, str)]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.01)


def _unused_port() -> int:
    """A TCP port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _make_settings(**overrides: object) -> Settings:
    """Settings with short timers suitable for tests."""
    values: dict[str, object] = {
        "ws_host": "127.0.0.1",
        "ws_port": 0,
        "telnet_host": "127.0.0.1",
        "telnet_port": 3000,
        "connect_timeout": 500,
        "connection_timeout": 0,
        "reconnect_delay": 10,
        "reconnect_max_delay": 40,
        "max_reconnect_attempts": 3,
        "keepalive_interval": 0,
        "ping_interval": 0,
        "pong_timeout": 100,
        "shutdown_grace": 500,
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
async def telnet_stub():
    """A running Telnet stand-in, stopped after the test."""
    stub = TelnetStub()
    await stub.start()
    yield stub
    await stub.stop()


@pytest.fixture
async def stalled_stub():
    """A Telnet stand-in whose receive buffers fill up and stay full."""
    stub = StalledTelnetStub()
    await stub.start()
    yield stub
    await stub.stop()


@pytest.fixture
def settings(telnet_stub: TelnetStub) -> Settings:
    """Fast settings pointing at the Telnet stand-in."""
    return _make_settings(telnet_port=telnet_stub.port)


@pytest.fixture
def fake_websocket() -> FakeWebSocket:
    """A fake client connection."""
    return FakeWebSocket()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for fast settings with overrides."""
    return _make_settings


@pytest.fixture
def wait_until() -> Callable[..., object]:
    """Async polling helper."""
    return _wait_until


@pytest.fixture
def unused_port() -> int:
    """A local port with no listener."""
    return _unused_port()
