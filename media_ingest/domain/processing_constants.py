"""Domain constants for message processing."""

from datetime import timedelta
from typing import Final

from media_ingest.domain.models import ProcessingState

AI_ESCALATION_CONFIDENCE_THRESHOLD: Final[float] = 0.75
STALE_PROCESSING_TIMEOUT: Final[timedelta] = timedelta(minutes=15)
MAX_STALLED_RETRIES: Final[int] = 3
MEDIA_GROUP_RECHECK_DELAY: Final[timedelta] = timedelta(seconds=30)
FILE_REFERENCE_TTL: Final[timedelta] = timedelta(hours=24)
MAX_REDOWNLOAD_ATTEMPTS: Final[int] = 5
INCONSISTENT_GROUP_BATCH_SIZE: Final[int] = 50

STALLED_ERROR_PREFIX: Final[str] = "stalled"
MISSING_OBJECT_REASON: Final[str] = "File not found in storage"

_S = ProcessingState

ALLOWED_TRANSITIONS: Final[dict[ProcessingState, frozenset[ProcessingState]]] = {
    _S.INITIALIZED: frozenset({_S.PENDING, _S.DELETED}),
    _S.PENDING: frozenset({_S.PROCESSING, _S.ERROR, _S.DELETED}),
    _S.PROCESSING: frozenset(
        {_S.COMPLETED, _S.PARTIAL_SUCCESS, _S.ERROR, _S.PENDING, _S.DELETED}
    ),
    _S.COMPLETED: frozenset({_S.PENDING, _S.INITIALIZED, _S.DELETED}),
    _S.PARTIAL_SUCCESS: frozenset({_S.PENDING, _S.INITIALIZED, _S.DELETED}),
    _S.ERROR: frozenset({_S.PENDING, _S.INITIALIZED, _S.DELETED}),
    _S.DELETED: frozenset(),
}

# Settled states an edit or a force request may send back to pending.
REPROCESSABLE_STATES: Final[frozenset[ProcessingState]] = frozenset(
    {_S.INITIALIZED, _S.COMPLETED, _S.PARTIAL_SUCCESS, _S.ERROR}
)


def is_allowed_transition(current: ProcessingState, target: ProcessingState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


__all__ = [
    "AI_ESCALATION_CONFIDENCE_THRESHOLD",
    "ALLOWED_TRANSITIONS",
    "FILE_REFERENCE_TTL",
    "INCONSISTENT_GROUP_BATCH_SIZE",
    "MAX_REDOWNLOAD_ATTEMPTS",
    "MAX_STALLED_RETRIES",
    "MEDIA_GROUP_RECHECK_DELAY",
    "MISSING_OBJECT_REASON",
    "REPROCESSABLE_STATES",
    "STALE_PROCESSING_TIMEOUT",
    "STALLED_ERROR_PREFIX",
    "is_allowed_transition",
]
