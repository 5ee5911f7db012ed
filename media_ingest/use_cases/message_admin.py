"""Administrative message operations: caption edits, deletes and reprocessing."""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import DataIntegrityError, ValidationError
from media_ingest.domain.models import (
    AuditEvent,
    CaptionWorkflowResult,
    ContentSnapshot,
    Message,
    utc_now,
)
from media_ingest.domain.protocols import (
    MessageRepository,
    ObjectStorePort,
    TelegramBotPort,
)
from media_ingest.ports.workflows import CaptionWorkflowPort
from media_ingest.use_cases.processing_state import ProcessingStateMachine

logger = get_logger(__name__)


class MessageAdmin:
    """Operator actions on stored messages."""

    def __init__(
        self,
        repository: MessageRepository,
        store: ObjectStorePort,
        bot: TelegramBotPort,
        state_machine: ProcessingStateMachine,
        caption_workflow: CaptionWorkflowPort,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._store = store
        self._bot = bot
        self._state_machine = state_machine
        self._caption_workflow = caption_workflow
        self._clock = clock

    def _require(self, message_id: UUID) -> Message:
        message = self._repository.get_message(message_id)
        if message is None:
            raise DataIntegrityError(f"Message {message_id} not found")
        return message

    def edit_caption(
        self, message_id: UUID, caption: str, *, correlation_id: str | None = None
    ) -> CaptionWorkflowResult | None:
        """Change a caption on Telegram and re-analyze it.

        Returns:
            The workflow result, or None when the caption did not change
        """
        if not caption or not caption.strip():
            raise ValidationError("caption must not be empty")
        message = self._require(message_id)
        if (message.caption or "") == caption:
            logger.info("caption_unchanged", message_id=str(message_id))
            return None

        self._bot.edit_message_caption(
            message.chat_id, message.platform_message_id, caption
        )

        now = self._clock()
        fields: dict[str, Any] = {
            "caption": caption,
            "edit_count": message.edit_count + 1,
            "edit_date": now,
            "telegram_data": {**message.telegram_data, "caption": caption},
        }
        if message.analyzed_content is not None:
            fields["old_analyzed_content"] = [
                *message.old_analyzed_content,
                ContentSnapshot(
                    archived_at=now,
                    reason="edit",
                    content=message.analyzed_content.model_dump(mode="json"),
                ),
            ]
            fields["analyzed_content"] = None
        self._repository.update_message(message_id, fields)
        self._repository.record_event(
            AuditEvent(
                event_type="caption_edited",
                entity_id=str(message_id),
                correlation_id=correlation_id,
                metadata={"previous_caption": message.caption, "new_caption": caption},
            )
        )

        self._state_machine.force_to_pending(message_id, correlation_id=correlation_id)
        return self._caption_workflow.run(message_id, correlation_id)

    def delete_message(
        self,
        message_id: UUID,
        *,
        delete_from_telegram: bool = False,
        correlation_id: str | None = None,
    ) -> bool:
        """Soft delete, optionally removing the message from the chat first."""
        message = self._require(message_id)
        if delete_from_telegram:
            self._bot.delete_message(message.chat_id, message.platform_message_id)

        deleted = self._state_machine.mark_deleted(
            message_id, {"deleted_from_telegram": delete_from_telegram}
        )
        self._repository.record_event(
            AuditEvent(
                event_type="message_deleted",
                entity_id=str(message_id),
                correlation_id=correlation_id,
                metadata={
                    "delete_from_telegram": delete_from_telegram,
                    "media_group_id": message.media_group_id,
                    "previous_state": message.processing_state.value,
                },
            )
        )
        logger.info(
            "message_soft_deleted",
            message_id=str(message_id),
            delete_from_telegram=delete_from_telegram,
            changed=deleted,
        )
        return deleted

    def hard_delete(
        self, message_id: UUID, *, correlation_id: str | None = None
    ) -> bool:
        """Remove the row; the stored object goes too when nothing else uses it."""
        message = self._require(message_id)
        object_removed = False
        if message.storage_path and message.file_unique_id:
            references = self._repository.count_file_references(
                message.file_unique_id, message.id
            )
            if references == 0:
                self._store.delete(message.storage_path)
                object_removed = True

        removed = self._repository.delete_message(message_id)
        self._repository.record_event(
            AuditEvent(
                event_type="message_hard_deleted",
                entity_id=str(message_id),
                correlation_id=correlation_id,
                metadata={
                    "storage_path": message.storage_path,
                    "object_removed": object_removed,
                },
            )
        )
        logger.info(
            "message_hard_deleted",
            message_id=str(message_id),
            object_removed=object_removed,
        )
        return removed

    def force_reprocess(
        self, message_id: UUID, *, correlation_id: str | None = None
    ) -> CaptionWorkflowResult:
        self._require(message_id)
        return self._caption_workflow.run(message_id, correlation_id, force=True)


__all__ = ["MessageAdmin"]
