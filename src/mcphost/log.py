"""Logging setup for host processes embedding mcphost."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route `mcphost.*` loggers to one stderr stream handler."""
    global _handler
    root = logging.getLogger("mcphost")
    root.setLevel(level)
    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if _handler not in root.handlers:
        root.addHandler(_handler)
