"""Structured logging for dockhand.

The level comes from ``DOCKHAND_LOG_LEVEL`` (falling back to ``LOG_LEVEL``)
and is read from os.environ directly: the logger exists before Settings are
loaded, so settings errors can still be logged.  ``DOCKHAND_LOG_FORMAT=json``
emits one JSON object per line instead of the console renderer.

Every CLI invocation is logged at debug with its full command line; pass
credentials through the runner's environment, not the argument vector.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _level_from_env() -> int:
    name = os.environ.get("DOCKHAND_LOG_LEVEL") or os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, name.upper(), logging.INFO)


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(
    level: int | None = None,
    fmt: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """(Re)configure structlog and return the package logger."""
    level = _level_from_env() if level is None else level
    fmt = (fmt or os.environ.get("DOCKHAND_LOG_FORMAT", "console")).lower()

    # stdlib root first so filter_by_level sees the right threshold
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    logging.getLogger("dockhand").setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info if fmt == "json" else structlog.dev.set_exc_info,
            _renderer(fmt),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("dockhand")


logger = configure_logging()
