"""Allow running the proxy with ``python -m mudbridge``."""

from mudbridge.main import run

run()
