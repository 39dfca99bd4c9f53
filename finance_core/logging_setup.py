"""Logging for the ``finance_core`` package.

Library modules call ``get_logger(__name__)`` and stay silent until the
application calls ``configure_logging()`` (the FastAPI startup hook does).
"""

from __future__ import annotations

import logging
import sys
from typing import IO

from finance_core.settings import get_log_level

_PKG_LOGGER_NAME = "finance_core"
_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

_handler: logging.Handler | None = None


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = get_log_level() or "INFO"
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str | None = None, stream: IO[str] | None = None) -> None:
    """Attach one stream handler to the package logger.

    Calling it again only changes the level.
    """
    global _handler
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    resolved = _resolve_level(level)
    logger.setLevel(resolved)
    if _handler is not None:
        return

    for handler in list(logger.handlers):
        if isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
    _handler = logging.StreamHandler(stream or sys.stderr)
    _handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(_handler)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is None and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
