"""Media acquisition use case.

Downloads Telegram attachments and stores them in the object store under a
key derived from the content-stable ``file_unique_id``. Expired file
references are not fatal: a sibling's reference to the same bytes is tried,
and failing that the message is flagged for redownload.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    AcquisitionError,
    FileReferenceExpiredError,
    ObjectStoreError,
    RateLimitError,
    TelegramAPIError,
    ValidationError,
)
from media_ingest.domain.models import (
    AcquisitionResult,
    AuditEvent,
    MediaRef,
    Message,
    utc_now,
)
from media_ingest.domain.processing_constants import FILE_REFERENCE_TTL
from media_ingest.domain.protocols import (
    MessageRepository,
    ObjectStorePort,
    TelegramBotPort,
)
from media_ingest.observability.metrics import MEDIA_ACQUISITIONS_TOTAL
from media_ingest.services.mime_types import detect_mime_type
from media_ingest.services.storage_paths import standard_storage_path

logger = get_logger(__name__)

EXPIRED_REFERENCE_REASON = "file_reference_expired"
ACQUISITION_FAILED_REASON = "acquisition_failed"


class MediaAcquirer:
    """Fetches media bytes from Telegram into the object store."""

    def __init__(
        self,
        repository: MessageRepository,
        store: ObjectStorePort,
        bot: TelegramBotPort,
        *,
        file_reference_ttl: timedelta = FILE_REFERENCE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._store = store
        self._bot = bot
        self._file_reference_ttl = file_reference_ttl
        self._clock = clock

    def acquire(self, media: MediaRef) -> AcquisitionResult:
        """Store the bytes behind ``media`` and return where they live.

        An object already recorded for the same ``file_unique_id`` is reused
        when it still exists in storage.

        Raises:
            FileReferenceExpiredError: If Telegram no longer serves ``file_id``
            AcquisitionError: On any other download or upload failure
        """
        existing = self.find_existing(media)
        if existing is not None:
            MEDIA_ACQUISITIONS_TOTAL.labels(outcome="reused").inc()
            logger.info(
                "media_reused",
                file_unique_id=media.file_unique_id,
                storage_path=existing.storage_path,
            )
            return existing

        try:
            file_path = self._bot.get_file_path(media.file_id)
            data = self._bot.download_file(file_path)
        except FileReferenceExpiredError:
            MEDIA_ACQUISITIONS_TOTAL.labels(outcome="expired").inc()
            raise
        except (TelegramAPIError, RateLimitError) as e:
            MEDIA_ACQUISITIONS_TOTAL.labels(outcome="failed").inc()
            raise AcquisitionError(f"Telegram download failed: {e}") from e

        mime_type = detect_mime_type(media.media_kind, media.mime_type, file_path)
        storage_path = standard_storage_path(media.file_unique_id, mime_type)
        try:
            public_url = self._store.upload(storage_path, data, mime_type, upsert=True)
        except ObjectStoreError as e:
            MEDIA_ACQUISITIONS_TOTAL.labels(outcome="failed").inc()
            raise AcquisitionError(f"Upload failed: {e}") from e

        MEDIA_ACQUISITIONS_TOTAL.labels(outcome="stored").inc()
        logger.info(
            "media_stored",
            file_unique_id=media.file_unique_id,
            storage_path=storage_path,
            size_bytes=len(data),
            mime_type=mime_type,
        )
        return AcquisitionResult(
            storage_path=storage_path,
            public_url=public_url,
            mime_type=mime_type,
            file_id=media.file_id,
        )

    def find_existing(self, media: MediaRef) -> AcquisitionResult | None:
        """Return a stored object for this content when DB and storage agree."""
        for row in self._repository.find_stored_media(media.file_unique_id):
            if not row.storage_path or row.needs_redownload:
                continue
            try:
                present = self._store.exists(row.storage_path)
            except ObjectStoreError as e:
                raise AcquisitionError(f"Existence check failed: {e}") from e
            if not present:
                continue
            return AcquisitionResult(
                storage_path=row.storage_path,
                public_url=row.public_url or self._store.public_url(row.storage_path),
                mime_type=row.mime_type
                or detect_mime_type(media.media_kind, media.mime_type, row.storage_path),
                reused=True,
                file_id=media.file_id,
            )
        return None

    def candidate_file_ids(self, message: Message) -> list[str]:
        """The message's own file_id, then siblings' ids for the same bytes."""
        candidates = [message.file_id] if message.file_id else []
        if not message.media_group_id or not message.file_unique_id:
            return candidates
        for sibling in self._repository.list_group_messages(message.media_group_id):
            if (
                sibling.id != message.id
                and sibling.file_unique_id == message.file_unique_id
                and sibling.file_id
                and sibling.file_id not in candidates
            ):
                candidates.append(sibling.file_id)
        return candidates

    def acquire_with_fallback(self, message: Message) -> AcquisitionResult:
        """Try every known reference for the message's media in turn.

        Raises:
            ValidationError: If the message carries no media
            FileReferenceExpiredError: If every reference has expired
            AcquisitionError: On other failures
        """
        media = message.media_ref()
        if media is None:
            raise ValidationError(f"Message {message.id} has no media reference")

        last_expired: FileReferenceExpiredError | None = None
        for file_id in self.candidate_file_ids(message):
            try:
                return self.acquire(media.model_copy(update={"file_id": file_id}))
            except FileReferenceExpiredError as e:
                logger.info(
                    "media_reference_expired",
                    message_id=str(message.id),
                    file_id=file_id,
                    from_sibling=file_id != message.file_id,
                )
                last_expired = e
        assert last_expired is not None
        raise last_expired

    def acquire_for_message(
        self, message: Message, *, correlation_id: str | None = None
    ) -> AcquisitionResult | None:
        """Acquire media for a stored message and record the outcome on the row.

        Returns:
            The acquisition result, or None when the message was flagged for
            redownload instead
        """
        try:
            result = self.acquire_with_fallback(message)
        except FileReferenceExpiredError as e:
            self.flag_for_redownload(
                message.id,
                f"{EXPIRED_REFERENCE_REASON}: {e.description or e.file_id}",
                correlation_id=correlation_id,
            )
            return None
        except AcquisitionError as e:
            self.flag_for_redownload(
                message.id,
                f"{ACQUISITION_FAILED_REASON}: {e.reason}",
                correlation_id=correlation_id,
            )
            return None

        self.record_stored(message.id, result)
        return result

    def record_stored(self, message_id: UUID, result: AcquisitionResult) -> None:
        fields = {
            "storage_path": result.storage_path,
            "public_url": result.public_url,
            "mime_type": result.mime_type,
            "needs_redownload": False,
            "redownload_reason": None,
            "redownload_flagged_at": None,
        }
        if result.file_id:
            fields["file_id"] = result.file_id
            fields["file_id_expires_at"] = self._clock() + self._file_reference_ttl
        self._repository.update_message(message_id, fields)

    def flag_for_redownload(
        self, message_id: UUID, reason: str, *, correlation_id: str | None = None
    ) -> None:
        self._repository.update_message(
            message_id,
            {
                "needs_redownload": True,
                "redownload_reason": reason,
                "redownload_flagged_at": self._clock(),
            },
        )
        self._repository.record_event(
            AuditEvent(
                event_type="media_flagged_for_redownload",
                entity_id=str(message_id),
                correlation_id=correlation_id,
                error_message=reason,
            )
        )
        logger.warning(
            "media_flagged_for_redownload",
            message_id=str(message_id),
            reason=reason,
        )


__all__ = ["MediaAcquirer"]
