"""Structured logging setup for the chat backend.

Every log line written while a chat session runs carries that session's
``conversation_id`` and ``request_id``; see ``session_context``.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("anthropic", "httpx", "httpcore", "asyncpg", "uvicorn.access")

# Model output and tool payloads can be long; keep log lines readable
MAX_FIELD_LENGTH = 500


def truncate_long_values(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Shorten string fields longer than MAX_FIELD_LENGTH."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
            event_dict[key] = f"{value[:MAX_FIELD_LENGTH]}... ({len(value)} chars)"
    return event_dict


def _renderer(json_output: bool) -> list[Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines for production, console output otherwise
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            truncate_long_values,
            *_renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a structlog logger, optionally bound to some initial context."""
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger


@contextmanager
def session_context(**context: Any) -> Iterator[None]:
    """
    Bind values to every logger for the duration of one chat session.

    Sessions run concurrently as separate tasks; the previous values are
    restored on exit so nothing leaks into the next session on the task.
    """
    tokens = structlog.contextvars.bind_contextvars(**context)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
