"""structlog configuration shared by the session and the replay entry point."""

from __future__ import annotations

import logging
from typing import TextIO

import structlog

_configured = False


def configure_logging(
    level: str = "INFO",
    env: str = "development",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog once per process.

    JSON lines in production, the coloured console renderer otherwise.
    """
    global _configured
    if _configured:
        return

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
    )
    _configured = True
