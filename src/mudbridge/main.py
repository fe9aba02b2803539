"""Main entry point for the mudbridge WebSocket to Telnet proxy."""

import asyncio
import signal
import sys

import structlog

from mudbridge.config import Settings, get_settings
from mudbridge.exceptions import BindError
from mudbridge.logging_config import configure_logging
from mudbridge.network.server import ProxyServer

logger = structlog.get_logger(__name__)


async def main(settings: Settings | None = None) -> None:
    """
    Main async entry point for the proxy.

    Starts the WebSocket listener and runs until SIGINT or SIGTERM.
    """
    settings = settings or get_settings()
    server = ProxyServer(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: int) -> None:
        """Handle shutdown signals."""
        logger.info(
            "shutdown_signal_received",
            signal=signal.Signals(sig).name,
        )
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, ValueError):
            # Not available on every platform
            pass

    try:
        await server.start()

        logger.info(
            "mudbridge_running",
            message="Proxy is now running. Press Ctrl+C to stop.",
            ws_port=server.port,
            telnet_target=settings.telnet_target,
        )

        await stop.wait()

    except Exception as e:
        logger.error(
            "main_loop_error",
            error=str(e),
            exc_info=not isinstance(e, BindError),
        )
        raise
    finally:
        if server.is_running:
            await server.shutdown()


def run() -> None:
    """
    Synchronous entry point that runs the async main function.

    This is the function that should be called from the command line.
    """
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("server_stopped_by_user")
    except BindError:
        sys.exit(1)
    except Exception as e:
        logger.error(
            "server_fatal_error",
            error=str(e),
            exc_info=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    run()
