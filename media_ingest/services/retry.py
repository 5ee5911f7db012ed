"""Retry-with-backoff executor shared by database-facing operations.

Whether an error is worth retrying is decided by ``classify``, which delegates
to a per-backend classifier instead of matching one database's status codes
inline.
"""

from __future__ import annotations

import random
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any, Final, ParamSpec, TypeVar

import psycopg2
from psycopg2 import errorcodes

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    DataIntegrityError,
    DuplicateRecordError,
    NonRetryableError,
    RepositoryError,
    RetryableError,
)

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

RETRYABLE_PG_CODES: Final[frozenset[str]] = frozenset(
    {
        errorcodes.DEADLOCK_DETECTED,
        errorcodes.SERIALIZATION_FAILURE,
        errorcodes.QUERY_CANCELED,
        errorcodes.LOCK_NOT_AVAILABLE,
        errorcodes.ADMIN_SHUTDOWN,
        errorcodes.CANNOT_CONNECT_NOW,
    }
)
SQLITE_RETRYABLE_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database is busy",
    "disk i/o error",
)


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    retryable: bool
    reason: str


def classify_sqlite(error: BaseException) -> ErrorClassification | None:
    if not isinstance(error, sqlite3.Error):
        return None
    if isinstance(error, sqlite3.IntegrityError):
        return ErrorClassification(False, "integrity_violation")
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and any(
        marker in message for marker in SQLITE_RETRYABLE_MESSAGES
    ):
        return ErrorClassification(True, "lock_contention")
    return ErrorClassification(False, "sqlite_error")


def classify_postgres(error: BaseException) -> ErrorClassification | None:
    if not isinstance(error, psycopg2.Error):
        return None
    code = getattr(error, "pgcode", None)
    if code in RETRYABLE_PG_CODES:
        if code == errorcodes.DEADLOCK_DETECTED:
            return ErrorClassification(True, "deadlock")
        if code == errorcodes.QUERY_CANCELED:
            return ErrorClassification(True, "timeout")
        return ErrorClassification(True, "contention")
    if isinstance(error, psycopg2.IntegrityError):
        return ErrorClassification(False, "integrity_violation")
    if isinstance(error, psycopg2.OperationalError | psycopg2.InterfaceError):
        return ErrorClassification(True, "connection")
    return ErrorClassification(False, "postgres_error")


BACKEND_CLASSIFIERS: Final[
    tuple[Callable[[BaseException], ErrorClassification | None], ...]
] = (classify_sqlite, classify_postgres)


def classify(error: BaseException) -> ErrorClassification:
    """Decide whether ``error`` is a transient infrastructure failure.

    Repository errors are classified by the driver error they wrap; a bare
    ``RepositoryError`` counts as transient.
    """
    if isinstance(error, DuplicateRecordError | DataIntegrityError):
        return ErrorClassification(False, "data_integrity")
    if isinstance(error, NonRetryableError):
        return ErrorClassification(False, "validation")

    cause = error.__cause__
    if isinstance(error, RepositoryError) and cause is not None:
        return classify(cause)

    for classifier in BACKEND_CLASSIFIERS:
        result = classifier(error)
        if result is not None:
            return result

    if isinstance(error, TimeoutError):
        return ErrorClassification(True, "timeout")
    if isinstance(error, ConnectionError):
        return ErrorClassification(True, "connection")
    if isinstance(error, RetryableError):
        return ErrorClassification(True, "transient")
    return ErrorClassification(False, "unexpected")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.2

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        """Delay before the retry following ``attempt`` (1-based)."""
        delay = min(
            self.base_delay_seconds * (self.multiplier ** (attempt - 1)),
            self.max_delay_seconds,
        )
        jitter = delay * self.jitter_ratio
        return max(0.0, delay + rng.uniform(-jitter, jitter))


class RetryExecutor:
    """Runs a callable, retrying while ``classify`` says the failure is transient."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        classifier: Callable[[BaseException], ErrorClassification] = classify,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._classify = classifier

    def run(self, func: Callable[[], T], *, operation: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return func()
            except Exception as exc:
                verdict = self._classify(exc)
                if not verdict.retryable or attempt >= self.policy.max_attempts:
                    if verdict.retryable:
                        logger.error(
                            "db_retry_exhausted",
                            operation=operation,
                            attempts=attempt,
                            reason=verdict.reason,
                            error=str(exc),
                        )
                    raise
                delay = self.policy.delay_for(attempt, self._rng)
                logger.warning(
                    "db_operation_retry",
                    operation=operation,
                    attempt=attempt,
                    reason=verdict.reason,
                    wait_seconds=round(delay, 3),
                    error=str(exc),
                )
                self._sleep(delay)


def retrying(operation: str) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Method decorator running the call through ``self._retry_executor``."""

    def decorator(method: Callable[P, T]) -> Callable[P, T]:
        @wraps(method)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            owner: Any = args[0]
            executor: RetryExecutor = owner._retry_executor
            return executor.run(lambda: method(*args, **kwargs), operation=operation)

        return wrapper

    return decorator


__all__ = [
    "ErrorClassification",
    "RetryExecutor",
    "RetryPolicy",
    "classify",
    "classify_postgres",
    "classify_sqlite",
    "retrying",
]
