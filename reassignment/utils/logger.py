"""Logging for the reassignment engine.

Every module logs through ``get_logger(__name__)``. Lines share one
pipe-delimited layout, and event messages follow the same
``"Event | key=value"`` shape, so workflow transitions, penalty decisions and
collaborator failures can be grepped by request or reservation id.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from reassignment.utils.config import get_settings


_LOGGER_INITIALIZED = False

# Chatty libraries pulled in by the API and its test client.
_QUIET_LOGGERS = ("httpx", "uvicorn.access")


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once per process.

    ``level`` overrides ``REASSIGN_LOG_LEVEL``; later calls are no-ops, so the
    first module to log decides the level.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Logger for a ``reassignment.*`` module, configuring the root on first use."""
    configure_logging()
    return logging.getLogger(name)
