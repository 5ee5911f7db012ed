"""Processing state machine for messages.

Every transition is a conditional update against the repository: the row only
changes when it is still in one of the expected states. The pending ->
processing claim is therefore exclusive without any other lock.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import InvalidStateTransitionError
from media_ingest.domain.models import (
    AuditEvent,
    ParsedContent,
    ProcessingState,
    StalledSweepResult,
    utc_now,
)
from media_ingest.domain.processing_constants import (
    MAX_STALLED_RETRIES,
    REPROCESSABLE_STATES,
    STALE_PROCESSING_TIMEOUT,
    STALLED_ERROR_PREFIX,
    is_allowed_transition,
)
from media_ingest.domain.protocols import MessageRepository
from media_ingest.observability.metrics import (
    CLAIM_CONFLICTS_TOTAL,
    STALLED_MESSAGES_TOTAL,
)

logger = get_logger(__name__)

_NOT_DELETED = tuple(state for state in ProcessingState if state != ProcessingState.DELETED)
_SETTLED = (
    ProcessingState.COMPLETED,
    ProcessingState.PARTIAL_SUCCESS,
    ProcessingState.ERROR,
)


class ProcessingStateMachine:
    """Guards every processing_state change of a message."""

    def __init__(
        self,
        repository: MessageRepository,
        *,
        stale_after: timedelta = STALE_PROCESSING_TIMEOUT,
        max_stalled_retries: int = MAX_STALLED_RETRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._stale_after = stale_after
        self._max_stalled_retries = max_stalled_retries
        self._clock = clock

    def _transition(
        self,
        message_id: UUID,
        from_states: tuple[ProcessingState, ...],
        to_state: ProcessingState,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        for state in from_states:
            if not is_allowed_transition(state, to_state):
                raise InvalidStateTransitionError(state.value, to_state.value)
        return self._repository.transition_state(message_id, from_states, to_state, fields)

    def mark_pending(
        self,
        message_id: UUID,
        *,
        correlation_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """initialized -> pending once there is something to analyze."""
        return self._transition(
            message_id,
            (ProcessingState.INITIALIZED,),
            ProcessingState.PENDING,
            {**(fields or {}), "correlation_id": correlation_id},
        )

    def claim(self, message_id: UUID, correlation_id: str | None = None) -> bool:
        """pending -> processing.

        Returns:
            True for the single caller that won; False when the message was not
            pending anymore (someone else claimed it or it moved on)
        """
        claimed = self._transition(
            message_id,
            (ProcessingState.PENDING,),
            ProcessingState.PROCESSING,
            {
                "processing_started_at": self._clock(),
                "correlation_id": correlation_id,
            },
        )
        if not claimed:
            CLAIM_CONFLICTS_TOTAL.inc()
            logger.info(
                "message_claim_skipped",
                message_id=str(message_id),
                correlation_id=correlation_id,
            )
        return claimed

    def complete(
        self,
        message_id: UUID,
        content: ParsedContent,
        fields: dict[str, Any] | None = None,
    ) -> ProcessingState | None:
        """processing -> completed or partial_success, storing ``content``.

        Returns:
            The new state, or None when the message was no longer processing
        """
        target = (
            ProcessingState.PARTIAL_SUCCESS
            if content.parsing_metadata.partial_success
            else ProcessingState.COMPLETED
        )
        changed = self._transition(
            message_id,
            (ProcessingState.PROCESSING,),
            target,
            {
                **(fields or {}),
                "analyzed_content": content,
                "processing_completed_at": self._clock(),
                "error_message": None,
            },
        )
        return target if changed else None

    def fail(
        self,
        message_id: UUID,
        error_message: str,
        *,
        from_states: tuple[ProcessingState, ...] = (
            ProcessingState.PENDING,
            ProcessingState.PROCESSING,
        ),
    ) -> bool:
        now = self._clock()
        return self._transition(
            message_id,
            from_states,
            ProcessingState.ERROR,
            {
                "error_message": error_message,
                "last_error_at": now,
                "processing_completed_at": now,
            },
        )

    def force_to_pending(
        self,
        message_id: UUID,
        *,
        correlation_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Send a settled message back to pending (edits and forced reprocessing)."""
        return self._transition(
            message_id,
            tuple(sorted(REPROCESSABLE_STATES, key=lambda state: state.value)),
            ProcessingState.PENDING,
            {
                **(fields or {}),
                "correlation_id": correlation_id,
                "error_message": None,
                "retry_count": 0,
                "processing_started_at": None,
                "processing_completed_at": None,
            },
        )

    def reset_to_initialized(
        self, message_id: UUID, *, correlation_id: str | None = None
    ) -> bool:
        """Settled -> initialized when the caption was taken away."""
        return self._transition(
            message_id,
            _SETTLED,
            ProcessingState.INITIALIZED,
            {
                "correlation_id": correlation_id,
                "error_message": None,
                "retry_count": 0,
                "processing_started_at": None,
                "processing_completed_at": None,
            },
        )

    def mark_deleted(
        self, message_id: UUID, fields: dict[str, Any] | None = None
    ) -> bool:
        return self._transition(
            message_id,
            _NOT_DELETED,
            ProcessingState.DELETED,
            {**(fields or {}), "deleted_at": self._clock()},
        )

    def sweep_stalled(
        self, *, limit: int = 100, correlation_id: str | None = None
    ) -> StalledSweepResult:
        """Recover messages stuck in processing.

        Rows older than the staleness window go back to pending with their
        retry counter bumped; rows that already used up their retries go to
        error. Each move re-checks that the row is still processing and still
        stale, so a row that finished or was claimed again meanwhile is left
        alone.
        """
        now = self._clock()
        stale_before = now - self._stale_after
        result = StalledSweepResult()
        for message in self._repository.find_stalled(stale_before, limit):
            if message.retry_count >= self._max_stalled_retries:
                reason = (
                    f"{STALLED_ERROR_PREFIX}: processing exceeded "
                    f"{int(self._stale_after.total_seconds() // 60)} minutes "
                    f"after {message.retry_count} retries"
                )
                moved = self._repository.release_stalled(
                    message.id,
                    stale_before,
                    ProcessingState.ERROR,
                    {"error_message": reason, "last_error_at": now},
                )
                if moved:
                    result.moved_to_error.append(message.id)
                    STALLED_MESSAGES_TOTAL.labels(action="error").inc()
                    self._repository.record_event(
                        AuditEvent(
                            event_type="processing_stalled_error",
                            entity_id=str(message.id),
                            correlation_id=correlation_id,
                            error_message=reason,
                            metadata={"retry_count": message.retry_count},
                        )
                    )
                continue

            moved = self._repository.release_stalled(
                message.id,
                stale_before,
                ProcessingState.PENDING,
                {"processing_started_at": None},
                increment_retry=True,
            )
            if moved:
                result.reset_to_pending.append(message.id)
                STALLED_MESSAGES_TOTAL.labels(action="reset").inc()
                self._repository.record_event(
                    AuditEvent(
                        event_type="processing_stalled_reset",
                        entity_id=str(message.id),
                        correlation_id=correlation_id,
                        metadata={"retry_count": message.retry_count + 1},
                    )
                )

        if result.reset_to_pending or result.moved_to_error:
            logger.warning(
                "stalled_messages_recovered",
                reset=len(result.reset_to_pending),
                errored=len(result.moved_to_error),
            )
        return result


__all__ = ["ProcessingStateMachine"]
