"""Fixed window message rate limiting for client input."""

import time
from collections.abc import Callable

# Default rate limits
DEFAULT_MAX_MESSAGES = 100
DEFAULT_WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Count client messages in fixed windows.

    The window starts at construction (or at the first message after the
    previous window expired) and lasts ``window`` seconds. At most
    ``max_messages`` are admitted per window. The limiter does no I/O; the
    clock is injectable so callers can supply ``now`` explicitly.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        window: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.max_messages = max_messages
        self.window = window
        self._clock = clock
        self.window_start = clock()
        self.count = 0

    def expire(self, now: float | None = None) -> bool:
        """
        Start a new window if the current one has elapsed.

        Returns:
            True if the window was reset
        """
        now = self._clock() if now is None else now
        if now - self.window_start >= self.window:
            self.window_start = now
            self.count = 0
            return True
        return False

    def allow(self, now: float | None = None) -> bool:
        """
        Try to admit one message.

        Args:
            now: Current time in clock units; read from the clock if omitted

        Returns:
            True if the message is within the limit, False if it must be rejected
        """
        self.expire(now)
        if self.count >= self.max_messages:
            return False
        self.count += 1
        return True

    @property
    def remaining(self) -> int:
        """Messages still admissible in the current window."""
        return max(0, self.max_messages - self.count)

    def reset(self) -> None:
        """Start a fresh window now."""
        self.window_start = self._clock()
        self.count = 0
