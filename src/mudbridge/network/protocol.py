"""WebSocket close codes, Telnet byte helpers and client status notices."""

from collections.abc import Iterator
from typing import Final

from telnetlib3.telopt import DO, DONT, IAC, NOP, SE, WILL, WONT

# WebSocket close codes (RFC 6455 section 7.4.1)
CLOSE_NORMAL: Final[int] = 1000
CLOSE_GOING_AWAY: Final[int] = 1001
CLOSE_POLICY_VIOLATION: Final[int] = 1008
CLOSE_INTERNAL_ERROR: Final[int] = 1011
CLOSE_TRY_AGAIN_LATER: Final[int] = 1013

# Sent to the Telnet server as a keepalive
KEEPALIVE_NOP: Final[bytes] = IAC + NOP

_IAC = IAC[0]
_SE = SE[0]
_NEGOTIATION = frozenset(b[0] for b in (WILL, WONT, DO, DONT))

# ANSI color codes
ANSI_COLORS: Final[dict[str, str]] = {
    "RED": "\x1b[31m",
    "GREEN": "\x1b[32m",
    "YELLOW": "\x1b[33m",
    "CYAN": "\x1b[36m",
    "RESET": "\x1b[0m",
    "BOLD": "\x1b[1m",
    "DIM": "\x1b[2m",
}

NOTICE_PREFIX: Final[str] = "[proxy]"


def colorize(text: str, color: str) -> str:
    """
    Apply ANSI color to text.

    Args:
        text: The text to colorize
        color: Color name from ANSI_COLORS dict (e.g., 'RED', 'GREEN')

    Returns:
        Text wrapped with ANSI color codes
    """
    color_code = ANSI_COLORS.get(color.upper(), "")
    if not color_code:
        return text
    return f"{color_code}{text}{ANSI_COLORS['RESET']}"


def status_notice(message: str, color: str = "CYAN") -> str:
    """
    Format a connection status line for the browser terminal.

    The notice starts and ends with CRLF so it never merges with a partial
    line of game output.
    """
    return f"\r\n{colorize(f'{NOTICE_PREFIX} {message}', color)}\r\n"


def chunk_bytes(data: bytes, size: int) -> Iterator[bytes]:
    """
    Split data into consecutive pieces of at most ``size`` bytes.

    Args:
        data: Bytes to split
        size: Maximum piece length (must be positive)

    Yields:
        Slices of data in order; nothing for empty input
    """
    if size <= 0:
        raise ValueError("size must be positive")
    view = memoryview(data)
    for offset in range(0, len(data), size):
        yield bytes(view[offset : offset + size])


def backoff_delay(attempt: int, base_ms: int, ceiling_ms: int) -> float:
    """
    Delay before reconnect attempt ``attempt`` (1-based), in seconds.

    The delay starts at ``base_ms`` and doubles on every attempt, never
    exceeding ``ceiling_ms``.
    """
    if attempt < 1:
        return 0.0
    delay_ms = min(base_ms * (2 ** (attempt - 1)), ceiling_ms)
    return delay_ms / 1000


def total_backoff(attempts: int, base_ms: int, ceiling_ms: int) -> float:
    """Sum of all backoff delays for ``attempts`` reconnect attempts, in seconds."""
    return sum(backoff_delay(n, base_ms, ceiling_ms) for n in range(1, attempts + 1))


def filter_telnet_iac(data: bytes) -> bytes:
    """
    Remove Telnet command and option negotiation sequences from a chunk.

    - ``IAC WILL|WONT|DO|DONT <option>`` is removed; a negotiation missing its
      option byte at the end of the chunk is removed as well.
    - ``IAC <command>`` for any other command byte (SE through SB) is removed.
    - ``IAC IAC`` is an escaped 0xFF and becomes a single 0xFF.
    - ``IAC`` followed by a non-command byte, or alone at the end of the
      chunk, is kept as data.

    Each chunk is filtered on its own; a sequence split across two reads is
    not reassembled.
    """
    if _IAC not in data:
        return data

    out = bytearray()
    i = 0
    length = len(data)
    while i < length:
        byte = data[i]
        if byte != _IAC or i + 1 >= length:
            out.append(byte)
            i += 1
            continue

        command = data[i + 1]
        if command == _IAC:
            out.append(_IAC)
            i += 2
        elif command in _NEGOTIATION:
            i += 3
        elif command >= _SE:
            i += 2
        else:
            out.append(byte)
            i += 1
    return bytes(out)


def ensure_line_ending(data: bytes) -> bytes:
    """Append CRLF unless the message already ends with a newline."""
    if data.endswith(b"\n"):
        return data
    return data + b"\r\n"
