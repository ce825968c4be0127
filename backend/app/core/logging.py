"""
Structured logging configuration using structlog.

JSON logs in production, colored console output in development.
Checkout requests bind their store / request identifiers into the
structlog context so every line emitted while a reservation is being
built carries them.
"""
import logging
import sys
import uuid
import structlog
from typing import Any, Optional

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "yookassa", "aiosqlite")


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure structlog for structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON output (production) or human-readable output (development).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_checkout_context(store_id: int, request_id: Optional[str] = None) -> str:
    """
    Bind checkout identifiers to the current context.

    Returns the request id so the caller can echo it back in headers.
    """
    request_id = request_id or uuid.uuid4().hex[:16]
    structlog.contextvars.bind_contextvars(store_id=store_id, checkout_request_id=request_id)
    return request_id


def clear_checkout_context() -> None:
    structlog.contextvars.unbind_contextvars("store_id", "checkout_request_id")
