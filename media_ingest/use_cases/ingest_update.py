"""Ingest Telegram webhook updates use case.

Turns one Bot API update into a stored message row, acquires its media and
runs the caption workflow. New messages and edits (for both chats and
channels) are handled; updates without media are acknowledged and ignored.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import DuplicateRecordError, MediaIngestError
from media_ingest.domain.models import (
    AuditEvent,
    ContentSnapshot,
    IngestOutcome,
    MediaKind,
    MediaRef,
    Message,
    utc_now,
)
from media_ingest.domain.processing_constants import FILE_REFERENCE_TTL
from media_ingest.domain.protocols import MessageRepository
from media_ingest.observability.metrics import WEBHOOK_UPDATES_TOTAL
from media_ingest.observability.tracing import correlation_scope
from media_ingest.ports.workflows import CaptionWorkflowPort
from media_ingest.services.mime_types import detect_mime_type
from media_ingest.use_cases.media_acquisition import (
    ACQUISITION_FAILED_REASON,
    MediaAcquirer,
)
from media_ingest.use_cases.processing_state import ProcessingStateMachine

logger = get_logger(__name__)

NEW_MESSAGE_KEYS: Final[tuple[str, ...]] = ("message", "channel_post")
EDITED_MESSAGE_KEYS: Final[tuple[str, ...]] = ("edited_message", "edited_channel_post")

# animation messages also carry a "document" entry, so order matters
_MEDIA_FIELDS: Final[tuple[tuple[str, MediaKind], ...]] = (
    ("animation", MediaKind.ANIMATION),
    ("video", MediaKind.VIDEO),
    ("video_note", MediaKind.VIDEO_NOTE),
    ("document", MediaKind.DOCUMENT),
    ("audio", MediaKind.AUDIO),
    ("voice", MediaKind.VOICE),
    ("sticker", MediaKind.STICKER),
)

EDIT_HISTORY_REASON: Final[str] = "edit"


def _photo_area(size: dict[str, Any]) -> int:
    return int(size.get("width") or 0) * int(size.get("height") or 0)


def extract_media(payload: dict[str, Any]) -> MediaRef | None:
    """Pick the attachment of a Telegram message.

    Photos come as a list of sizes; the largest one is kept.

    Args:
        payload: The ``message`` / ``channel_post`` object of an update

    Returns:
        The media reference, or None for messages without supported media
    """
    photos = payload.get("photo")
    if photos:
        largest = max(photos, key=lambda size: (_photo_area(size), size.get("file_size") or 0))
        return MediaRef(
            file_id=largest["file_id"],
            file_unique_id=largest["file_unique_id"],
            media_kind=MediaKind.PHOTO,
            mime_type=detect_mime_type(MediaKind.PHOTO),
            file_size=largest.get("file_size"),
        )

    for field, kind in _MEDIA_FIELDS:
        media = payload.get(field)
        if not isinstance(media, dict) or "file_id" not in media:
            continue
        return MediaRef(
            file_id=media["file_id"],
            file_unique_id=media["file_unique_id"],
            media_kind=kind,
            mime_type=detect_mime_type(kind, media.get("mime_type")),
            file_name=media.get("file_name"),
            file_size=media.get("file_size"),
        )
    return None


def split_update(update: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """Return ``(update_type, message_payload)`` for supported update kinds."""
    for key in (*NEW_MESSAGE_KEYS, *EDITED_MESSAGE_KEYS):
        payload = update.get(key)
        if isinstance(payload, dict):
            return key, payload
    return None


def _from_unix(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _caption(payload: dict[str, Any]) -> str | None:
    caption = payload.get("caption")
    return caption if caption and caption.strip() else None


class UpdateIngestor:
    """Coordinates storage, media acquisition and caption processing per update."""

    def __init__(
        self,
        repository: MessageRepository,
        acquirer: MediaAcquirer,
        caption_workflow: CaptionWorkflowPort,
        state_machine: ProcessingStateMachine,
        *,
        file_reference_ttl: timedelta = FILE_REFERENCE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._acquirer = acquirer
        self._caption_workflow = caption_workflow
        self._state_machine = state_machine
        self._file_reference_ttl = file_reference_ttl
        self._clock = clock

    def handle_update(
        self, update: dict[str, Any], *, correlation_id: str | None = None
    ) -> IngestOutcome:
        """Process one webhook update.

        Processing failures are recorded on the message row (error state or
        redownload flag) and reported in the outcome rather than raised, so
        the platform never redelivers an update we already stored.
        """
        with correlation_scope(correlation_id) as cid:
            split = split_update(update)
            if split is None:
                outcome = IngestOutcome(
                    update_type="unknown", action="ignored", detail="unsupported update"
                )
                WEBHOOK_UPDATES_TOTAL.labels(
                    update_type=outcome.update_type, outcome=outcome.action
                ).inc()
                return outcome

            update_type, payload = split
            media = extract_media(payload)
            if media is None:
                outcome = IngestOutcome(
                    update_type=update_type, action="ignored", detail="no media"
                )
            elif update_type in NEW_MESSAGE_KEYS:
                outcome = self._ingest_new(update_type, update, payload, media, cid)
            else:
                outcome = self._ingest_edit(update_type, update, payload, media, cid)

            WEBHOOK_UPDATES_TOTAL.labels(
                update_type=update_type, outcome=outcome.action
            ).inc()
            logger.info(
                "webhook_update_handled",
                update_type=update_type,
                action=outcome.action,
                message_id=str(outcome.message_id) if outcome.message_id else None,
                detail=outcome.detail,
            )
            return outcome

    def _ingest_new(
        self,
        update_type: str,
        update: dict[str, Any],
        payload: dict[str, Any],
        media: MediaRef,
        correlation_id: str,
    ) -> IngestOutcome:
        chat = payload.get("chat") or {}
        chat_id = int(chat["id"])
        platform_message_id = int(payload["message_id"])

        existing = self._repository.find_by_platform_id(chat_id, platform_message_id)
        if existing is not None:
            return IngestOutcome(
                update_type=update_type,
                action="duplicate",
                message_id=existing.id,
                detail="message already stored",
            )

        message = Message(
            platform_message_id=platform_message_id,
            chat_id=chat_id,
            chat_type=chat.get("type"),
            chat_title=chat.get("title") or chat.get("username"),
            media_group_id=payload.get("media_group_id"),
            caption=_caption(payload),
            file_id=media.file_id,
            file_unique_id=media.file_unique_id,
            file_id_expires_at=self._clock() + self._file_reference_ttl,
            media_kind=media.media_kind,
            mime_type=media.mime_type,
            file_size=media.file_size,
            correlation_id=correlation_id,
            telegram_data=update,
        )
        try:
            stored = self._repository.insert_message(message)
        except DuplicateRecordError:
            # another delivery of the same update won the insert
            winner = self._repository.find_by_platform_id(chat_id, platform_message_id)
            return IngestOutcome(
                update_type=update_type,
                action="duplicate",
                message_id=winner.id if winner else None,
                detail="concurrent insert",
            )

        self._repository.record_event(
            AuditEvent(
                event_type="message_created",
                entity_id=str(stored.id),
                correlation_id=correlation_id,
                metadata={
                    "chat_id": chat_id,
                    "platform_message_id": platform_message_id,
                    "media_group_id": stored.media_group_id,
                    "has_caption": stored.has_caption,
                },
            )
        )

        self._acquire_media(stored, correlation_id)
        detail = self._run_workflow(stored, correlation_id)
        return IngestOutcome(
            update_type=update_type, action="created", message_id=stored.id, detail=detail
        )

    def _ingest_edit(
        self,
        update_type: str,
        update: dict[str, Any],
        payload: dict[str, Any],
        media: MediaRef,
        correlation_id: str,
    ) -> IngestOutcome:
        chat = payload.get("chat") or {}
        existing = self._repository.find_by_platform_id(
            int(chat["id"]), int(payload["message_id"])
        )
        if existing is None:
            logger.info(
                "edit_for_unknown_message",
                chat_id=chat.get("id"),
                platform_message_id=payload.get("message_id"),
            )
            outcome = self._ingest_new(update_type, update, payload, media, correlation_id)
            return outcome.model_copy(update={"detail": "edit of unknown message"})

        now = self._clock()
        new_caption = _caption(payload)
        caption_changed = new_caption != (existing.caption or None)
        media_changed = media.file_unique_id != existing.file_unique_id

        fields: dict[str, Any] = {
            "telegram_data": {**existing.telegram_data, "edited_message": payload},
            "edit_date": _from_unix(payload.get("edit_date")) or now,
            "file_id": media.file_id,
            "file_id_expires_at": now + self._file_reference_ttl,
        }
        if caption_changed:
            fields["caption"] = new_caption
            fields["edit_count"] = existing.edit_count + 1
            if existing.analyzed_content is not None:
                fields["old_analyzed_content"] = [
                    *existing.old_analyzed_content,
                    ContentSnapshot(
                        archived_at=now,
                        reason=EDIT_HISTORY_REASON,
                        content=existing.analyzed_content.model_dump(mode="json"),
                    ),
                ]
                fields["analyzed_content"] = None
        if media_changed:
            fields.update(
                {
                    "file_unique_id": media.file_unique_id,
                    "media_kind": media.media_kind,
                    "mime_type": media.mime_type,
                    "file_size": media.file_size,
                    "storage_path": None,
                    "public_url": None,
                    "needs_redownload": False,
                    "redownload_reason": None,
                    "redownload_attempts": 0,
                }
            )

        self._repository.update_message(existing.id, fields)
        if not caption_changed and not media_changed:
            return IngestOutcome(
                update_type=update_type,
                action="updated",
                message_id=existing.id,
                detail="no content change",
            )

        self._repository.record_event(
            AuditEvent(
                event_type="message_edited",
                entity_id=str(existing.id),
                correlation_id=correlation_id,
                metadata={
                    "previous_caption": existing.caption,
                    "new_caption": new_caption,
                    "caption_changed": caption_changed,
                    "media_changed": media_changed,
                    "previous_state": existing.processing_state.value,
                    "media_group_id": existing.media_group_id,
                },
            )
        )

        refreshed = self._repository.get_message(existing.id) or existing
        if media_changed:
            self._acquire_media(refreshed, correlation_id)

        if refreshed.has_caption or refreshed.media_group_id:
            self._state_machine.force_to_pending(refreshed.id, correlation_id=correlation_id)
            refreshed = self._repository.get_message(existing.id) or refreshed
        elif caption_changed:
            # nothing left to analyze
            self._state_machine.reset_to_initialized(
                refreshed.id, correlation_id=correlation_id
            )
            refreshed = self._repository.get_message(existing.id) or refreshed
        detail = self._run_workflow(refreshed, correlation_id)
        return IngestOutcome(
            update_type=update_type, action="updated", message_id=existing.id, detail=detail
        )

    def _acquire_media(self, message: Message, correlation_id: str) -> None:
        """Store the media; any failure only flags the row for redownload."""
        try:
            self._acquirer.acquire_for_message(message, correlation_id=correlation_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "webhook_media_acquisition_failed",
                message_id=str(message.id),
                correlation_id=correlation_id,
            )
            self._acquirer.flag_for_redownload(
                message.id,
                f"{ACQUISITION_FAILED_REASON}: {type(exc).__name__}: {exc}",
                correlation_id=correlation_id,
            )

    def _run_workflow(self, message: Message, correlation_id: str) -> str | None:
        try:
            result = self._caption_workflow.run(message.id, correlation_id)
        except MediaIngestError as e:
            # the workflow already moved the message to error
            logger.warning(
                "webhook_caption_workflow_failed",
                message_id=str(message.id),
                error=str(e),
            )
            return f"caption workflow failed: {e}"
        if result.processing_state is not None:
            return result.detail or result.processing_state.value
        return result.detail


__all__ = ["UpdateIngestor", "extract_media", "split_update"]
