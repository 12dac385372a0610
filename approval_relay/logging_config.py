"""Structlog configuration for the approval relay."""

from __future__ import annotations

import logging
import os

import structlog

LOG_LEVEL = logging.INFO

# Libraries whose per-request INFO lines repeat what the relay already logs.
QUIET_LOGGERS = ("httpx", "httpcore", "slack_bolt", "slack_sdk")

_configured = False


def resolve_level(value: str | None, default: int = LOG_LEVEL) -> int:
    """Map a level name such as ``"debug"`` to its number; unknown names give *default*."""

    level = logging.getLevelName((value or "").strip().upper())
    return level if isinstance(level, int) else default


def configure_logging(level: int | None = None) -> None:
    """Configure structlog to emit JSON lines through the stdlib logger.

    The level comes from *level*, else the ``LOG_LEVEL`` environment
    variable. Only the first call has an effect.
    """

    global _configured
    if _configured:
        return

    if level is None:
        level = resolve_level(os.getenv("LOG_LEVEL"))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    _configured = True
