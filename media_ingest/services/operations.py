"""Uniform envelopes for maintenance operations.

Every operation exposed to the CLI or HTTP layer returns
``{success, data | error, error_type, correlation_id}``. Failures are logged
with the correlation id here, at the operation boundary.
"""

import time
from collections.abc import Callable
from typing import Any, Final

from pydantic import BaseModel

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    AcquisitionError,
    DataIntegrityError,
    FileReferenceExpiredError,
    LLMAPIError,
    ObjectStoreError,
    RateLimitError,
    TelegramAPIError,
    ValidationError,
)
from media_ingest.domain.models import OperationEnvelope
from media_ingest.observability.metrics import OPERATION_DURATION_SECONDS
from media_ingest.observability.tracing import correlation_scope
from media_ingest.services.retry import classify

logger = get_logger(__name__)

ERROR_TYPE_VALIDATION: Final[str] = "validation"
ERROR_TYPE_TRANSIENT: Final[str] = "transient"
ERROR_TYPE_EXTERNAL_API: Final[str] = "external_api"
ERROR_TYPE_DATA_INTEGRITY: Final[str] = "data_integrity"
ERROR_TYPE_INTERNAL: Final[str] = "internal"

_EXTERNAL_ERRORS: Final[tuple[type[Exception], ...]] = (
    TelegramAPIError,
    RateLimitError,
    LLMAPIError,
    ObjectStoreError,
    FileReferenceExpiredError,
    AcquisitionError,
)


def error_type_for(error: BaseException) -> str:
    if isinstance(error, ValidationError | ValueError):
        return ERROR_TYPE_VALIDATION
    if isinstance(error, DataIntegrityError):
        return ERROR_TYPE_DATA_INTEGRITY
    if isinstance(error, _EXTERNAL_ERRORS):
        return ERROR_TYPE_EXTERNAL_API
    if classify(error).retryable:
        return ERROR_TYPE_TRANSIENT
    return ERROR_TYPE_INTERNAL


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list | tuple):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    return value


def run_operation(
    operation: str,
    func: Callable[[str], Any],
    *,
    correlation_id: str | None = None,
) -> OperationEnvelope:
    """Run ``func(correlation_id)`` and wrap its outcome.

    Args:
        operation: Name used in logs and the duration histogram
        func: Callable receiving the active correlation id
        correlation_id: Existing id to continue; generated when missing

    Returns:
        Success envelope with serialized data, or failure envelope with the
        error message and its taxonomy class
    """
    with correlation_scope(correlation_id) as cid:
        started = time.perf_counter()
        try:
            result = func(cid)
        except Exception as e:
            error_type = error_type_for(e)
            logger.error(
                "operation_failed",
                operation=operation,
                error=str(e),
                error_type=error_type,
                exception_class=type(e).__name__,
                exc_info=error_type == ERROR_TYPE_INTERNAL,
            )
            return OperationEnvelope(
                success=False, error=str(e), error_type=error_type, correlation_id=cid
            )
        finally:
            OPERATION_DURATION_SECONDS.labels(operation=operation).observe(
                time.perf_counter() - started
            )

        logger.info("operation_completed", operation=operation)
        return OperationEnvelope(success=True, data=_serialize(result), correlation_id=cid)


__all__ = [
    "ERROR_TYPE_DATA_INTEGRITY",
    "ERROR_TYPE_EXTERNAL_API",
    "ERROR_TYPE_INTERNAL",
    "ERROR_TYPE_TRANSIENT",
    "ERROR_TYPE_VALIDATION",
    "error_type_for",
    "run_operation",
]
