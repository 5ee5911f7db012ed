"""Caption workflow use case.

Claims a pending message, analyzes its caption, stores the result and pushes
it to the rest of the media group.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    DataIntegrityError,
    MediaIngestError,
    ValidationError,
)
from media_ingest.domain.models import (
    AuditEvent,
    CaptionWorkflowResult,
    ContentSnapshot,
    GroupSyncResult,
    Message,
    ParsedContent,
    ProcessingState,
    utc_now,
)
from media_ingest.domain.protocols import MessageRepository
from media_ingest.observability.tracing import correlation_scope
from media_ingest.services.caption_analysis import CaptionAnalyzer
from media_ingest.use_cases.media_group_sync import MediaGroupSynchronizer
from media_ingest.use_cases.processing_state import ProcessingStateMachine

logger = get_logger(__name__)

REPROCESS_HISTORY_REASON = "reprocess"


def _archive_previous(
    message: Message, content: ParsedContent, now: datetime
) -> list[ContentSnapshot] | None:
    """Return the history with the old content appended, or None if unchanged."""
    previous = message.analyzed_content
    if previous is None or previous.without_timestamps() == content.without_timestamps():
        return None
    return [
        *message.old_analyzed_content,
        ContentSnapshot(
            archived_at=now,
            reason=REPROCESS_HISTORY_REASON,
            content=previous.model_dump(mode="json"),
        ),
    ]


class CaptionWorkflow:
    """Runs caption analysis for one message at a time.

    Safe to call concurrently for the same message: only the caller that wins
    the pending -> processing claim does any work.
    """

    def __init__(
        self,
        repository: MessageRepository,
        state_machine: ProcessingStateMachine,
        analyzer: CaptionAnalyzer,
        group_sync: MediaGroupSynchronizer,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._analyzer = analyzer
        self._group_sync = group_sync
        self._clock = clock

    def run(
        self,
        message_id: UUID,
        correlation_id: str | None = None,
        *,
        force: bool = False,
    ) -> CaptionWorkflowResult:
        """Analyze the caption of ``message_id``.

        Args:
            message_id: Message to process
            correlation_id: Identifier threaded through logs and audit rows
            force: Send a settled message back to pending before claiming

        Returns:
            Outcome of the run; ``claimed=False`` means nothing was done here

        Raises:
            DataIntegrityError: If the message does not exist
            MediaIngestError: If analysis or storage failed (the message is
                moved to error first)
        """
        with correlation_scope(correlation_id) as cid:
            message = self._repository.get_message(message_id)
            if message is None:
                raise DataIntegrityError(f"Message {message_id} not found")

            if message.processing_state == ProcessingState.DELETED:
                return CaptionWorkflowResult(
                    message_id=message_id,
                    claimed=False,
                    processing_state=message.processing_state,
                    detail="deleted",
                )

            if not message.has_caption:
                return self._without_caption(message, cid)

            if force:
                self._state_machine.force_to_pending(message_id, correlation_id=cid)
            elif message.processing_state == ProcessingState.INITIALIZED:
                self._state_machine.mark_pending(message_id, correlation_id=cid)

            if not self._state_machine.claim(message_id, cid):
                current = self._repository.get_message(message_id)
                return CaptionWorkflowResult(
                    message_id=message_id,
                    claimed=False,
                    processing_state=current.processing_state if current else None,
                    detail="not_claimed",
                )

            return self._process_claimed(message, cid, force=force)

    def _without_caption(self, message: Message, correlation_id: str) -> CaptionWorkflowResult:
        if not message.media_group_id:
            return CaptionWorkflowResult(
                message_id=message.id,
                claimed=False,
                processing_state=message.processing_state,
                detail="no_caption",
            )

        sync_result = self._group_sync.pull_for_message(
            message, correlation_id=correlation_id
        )
        current = self._repository.get_message(message.id)
        return CaptionWorkflowResult(
            message_id=message.id,
            claimed=False,
            processing_state=current.processing_state if current else None,
            analyzed_content=current.analyzed_content if current else None,
            group_sync=sync_result,
            detail=sync_result.reason or "synced_from_group",
        )

    def _process_claimed(
        self, message: Message, correlation_id: str, *, force: bool
    ) -> CaptionWorkflowResult:
        try:
            content = self._analyzer.analyze(message.caption)
            if content.parsing_metadata.error:
                raise ValidationError(content.parsing_metadata.error)

            fields: dict[str, Any] = {}
            history = _archive_previous(message, content, self._clock())
            if history is not None:
                fields["old_analyzed_content"] = history
            if message.media_group_id:
                fields["is_original_caption"] = True
                fields["message_caption_id"] = message.id

            state = self._state_machine.complete(message.id, content, fields)
        except Exception as e:
            self._state_machine.fail(
                message.id, str(e), from_states=(ProcessingState.PROCESSING,)
            )
            self._repository.record_event(
                AuditEvent(
                    event_type="caption_workflow_failed",
                    entity_id=str(message.id),
                    correlation_id=correlation_id,
                    error_message=str(e),
                    metadata={"error_type": type(e).__name__},
                )
            )
            logger.error(
                "caption_workflow_failed",
                message_id=str(message.id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        if state is None:
            # a stalled sweep or a delete moved the row while we were working
            logger.warning("caption_workflow_lost_claim", message_id=str(message.id))
            return CaptionWorkflowResult(
                message_id=message.id,
                claimed=True,
                analyzed_content=content,
                detail="state_changed_during_processing",
            )

        group_result = None
        if message.media_group_id:
            group_result = self._sync_group(message, content, correlation_id, force=force)

        logger.info(
            "caption_workflow_completed",
            message_id=str(message.id),
            processing_state=state.value,
            method=content.parsing_metadata.method.value,
            media_group_id=message.media_group_id,
        )
        return CaptionWorkflowResult(
            message_id=message.id,
            claimed=True,
            processing_state=state,
            analyzed_content=content,
            group_sync=group_result,
        )

    def _sync_group(
        self,
        message: Message,
        content: ParsedContent,
        correlation_id: str,
        *,
        force: bool,
    ) -> GroupSyncResult:
        assert message.media_group_id is not None
        try:
            return self._group_sync.sync(
                message.media_group_id,
                message.id,
                content,
                force_sync=force,
                sync_edit_history=message.edit_count > 0,
                correlation_id=correlation_id,
            )
        except MediaIngestError as e:
            # the message itself is already completed; the sweep retries the group
            logger.error(
                "caption_workflow_group_sync_failed",
                message_id=str(message.id),
                media_group_id=message.media_group_id,
                error=str(e),
            )
            return GroupSyncResult(
                media_group_id=message.media_group_id,
                source_message_id=message.id,
                reason=f"error: {e}",
            )


__all__ = ["CaptionWorkflow"]
