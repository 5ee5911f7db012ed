"""Structured logging setup for the ingest service.

JSON output is used by the webhook server and sweeps in production; the
console renderer is meant for local runs and tests.
"""

import logging
import sys
from typing import Any, Final

import structlog
from structlog.types import EventDict, Processor

APP_NAME: Final[str] = "telegram_media_ingest"

_NOISY_LOGGERS: Final[tuple[str, ...]] = (
    "httpx",
    "httpcore",
    "urllib3",
    "openai",
    "uvicorn.access",
)


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp every entry with the application name."""
    event_dict["app"] = APP_NAME
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
) -> None:
    """Configure structlog on top of the standard library logger.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_logs: Emit JSON lines instead of the colored console format

    Example:
        >>> setup_logging(log_level="INFO", json_logs=True)
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("media_group_synced", media_group_id="123", updated=3)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind context variables for all subsequent log entries in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove previously bound context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop every bound context variable."""
    structlog.contextvars.clear_contextvars()
