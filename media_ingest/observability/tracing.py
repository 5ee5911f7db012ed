"""Correlation identifiers shared by logs and audit records."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final
from uuid import uuid4

import structlog

from media_ingest.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY: Final[str] = "correlation_id"
CORRELATION_HEADER: Final[str] = "X-Correlation-ID"


def new_correlation_id() -> str:
    return str(uuid4())


def current_correlation_id() -> str | None:
    """Return the correlation id bound in the current context, if any."""

    value = structlog.contextvars.get_contextvars().get(CORRELATION_ID_KEY)
    return str(value) if value else None


@contextmanager
def correlation_scope(existing_id: str | None = None) -> Iterator[str]:
    """Bind a correlation identifier for the lifetime of the context.

    Nested scopes reuse the outer identifier unless one is passed explicitly,
    and restore it on exit.
    """

    outer_id = current_correlation_id()
    correlation_id = existing_id or outer_id or new_correlation_id()
    bind_context(**{CORRELATION_ID_KEY: correlation_id})
    try:
        yield correlation_id
    finally:
        if outer_id is not None:
            bind_context(**{CORRELATION_ID_KEY: outer_id})
        else:
            unbind_context(CORRELATION_ID_KEY)


__all__ = [
    "CORRELATION_HEADER",
    "CORRELATION_ID_KEY",
    "correlation_scope",
    "current_correlation_id",
    "new_correlation_id",
]
