"""Storage validation and repair use case.

Periodic pass over stored media:

* validate: does the object behind ``storage_path`` still exist?
* standardize paths: rename keys to ``{file_unique_id}.{ext}`` by copying the
  stored bytes, never by downloading from Telegram again
* fix URLs: recompute ``public_url`` from the path
* redownload: fetch flagged media again, bounded by a persistent attempt
  counter

Every batch reports per-message outcomes; one message failing never fails the
batch.
"""

from uuid import UUID

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    AcquisitionError,
    DataIntegrityError,
    FileReferenceExpiredError,
    MediaIngestError,
    ObjectStoreError,
)
from media_ingest.domain.models import (
    AuditEvent,
    Message,
    RedownloadResult,
    StorageCheckDetail,
    StorageReport,
    utc_now,
)
from media_ingest.domain.processing_constants import (
    MAX_REDOWNLOAD_ATTEMPTS,
    MISSING_OBJECT_REASON,
)
from media_ingest.domain.protocols import MessageRepository, ObjectStorePort
from media_ingest.services.storage_paths import corrected_storage_path, is_standard_path
from media_ingest.use_cases.media_acquisition import MediaAcquirer

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


class StorageMaintenance:
    """Validates and repairs stored media for batches of messages."""

    def __init__(
        self,
        repository: MessageRepository,
        store: ObjectStorePort,
        acquirer: MediaAcquirer,
        *,
        max_redownload_attempts: int = MAX_REDOWNLOAD_ATTEMPTS,
    ) -> None:
        self._repository = repository
        self._store = store
        self._acquirer = acquirer
        self._max_redownload_attempts = max_redownload_attempts

    def _batch(
        self, message_ids: list[UUID] | None, limit: int, offset: int
    ) -> list[Message]:
        return self._repository.list_media_messages(
            limit=limit, offset=offset, message_ids=message_ids
        )

    # === validate ===

    def validate(
        self,
        message_ids: list[UUID] | None = None,
        *,
        limit: int = DEFAULT_BATCH_SIZE,
        offset: int = 0,
        correlation_id: str | None = None,
    ) -> StorageReport:
        """Check that stored objects exist; flag confirmed-absent ones."""
        report = StorageReport()
        for message in self._batch(message_ids, limit, offset):
            report.add(self._validate_one(message, correlation_id))
        logger.info(
            "storage_validation_completed",
            processed=report.processed,
            valid=report.valid,
            invalid=report.invalid,
        )
        return report

    def _validate_one(
        self, message: Message, correlation_id: str | None
    ) -> StorageCheckDetail:
        if message.needs_redownload:
            return StorageCheckDetail(
                message_id=message.id,
                status="flagged",
                storage_path=message.storage_path,
                reason=message.redownload_reason,
            )
        if not message.storage_path:
            self._acquirer.flag_for_redownload(
                message.id, "No storage path recorded", correlation_id=correlation_id
            )
            return StorageCheckDetail(
                message_id=message.id, status="flagged", reason="No storage path recorded"
            )

        try:
            present = self._store.exists(message.storage_path)
        except ObjectStoreError as e:
            # unknown is not absent; only a confirmed miss flags the message
            return StorageCheckDetail(
                message_id=message.id,
                status="error",
                storage_path=message.storage_path,
                reason=str(e),
            )

        if present:
            return StorageCheckDetail(
                message_id=message.id, status="valid", storage_path=message.storage_path
            )

        self._acquirer.flag_for_redownload(
            message.id, MISSING_OBJECT_REASON, correlation_id=correlation_id
        )
        return StorageCheckDetail(
            message_id=message.id,
            status="flagged",
            storage_path=message.storage_path,
            reason=MISSING_OBJECT_REASON,
        )

    # === standardize paths ===

    def standardize_paths(
        self,
        message_ids: list[UUID] | None = None,
        *,
        limit: int = DEFAULT_BATCH_SIZE,
        offset: int = 0,
    ) -> StorageReport:
        """Rewrite non-standard storage paths in place."""
        report = StorageReport()
        for message in self._batch(message_ids, limit, offset):
            report.add(self._standardize_one(message))
        logger.info(
            "storage_paths_standardized",
            processed=report.processed,
            repaired=report.repaired,
            invalid=report.invalid,
        )
        return report

    def _standardize_one(self, message: Message) -> StorageCheckDetail:
        if not message.file_unique_id or not message.storage_path:
            return StorageCheckDetail(
                message_id=message.id,
                status="error",
                storage_path=message.storage_path,
                reason="missing storage path or file_unique_id",
            )
        if is_standard_path(message.storage_path, message.file_unique_id, message.mime_type):
            return StorageCheckDetail(
                message_id=message.id, status="valid", storage_path=message.storage_path
            )

        new_path = corrected_storage_path(
            message.storage_path, message.file_unique_id, message.mime_type
        )
        try:
            if not self._store.exists(new_path):
                data = self._store.download(message.storage_path)
                self._store.upload(
                    new_path,
                    data,
                    message.mime_type or "application/octet-stream",
                    upsert=True,
                )
            public_url = self._store.public_url(new_path)
            self._repository.update_message(
                message.id, {"storage_path": new_path, "public_url": public_url}
            )
        except MediaIngestError as e:
            logger.warning(
                "storage_path_standardize_failed",
                message_id=str(message.id),
                storage_path=message.storage_path,
                error=str(e),
            )
            return StorageCheckDetail(
                message_id=message.id,
                status="error",
                storage_path=message.storage_path,
                reason=str(e),
            )

        logger.info(
            "storage_path_standardized",
            message_id=str(message.id),
            old_path=message.storage_path,
            new_path=new_path,
        )
        return StorageCheckDetail(
            message_id=message.id, status="repaired", storage_path=new_path
        )

    # === fix URLs ===

    def fix_urls(
        self,
        message_ids: list[UUID] | None = None,
        *,
        limit: int = DEFAULT_BATCH_SIZE,
        offset: int = 0,
    ) -> StorageReport:
        """Recompute ``public_url`` from ``storage_path`` where they disagree."""
        report = StorageReport()
        for message in self._batch(message_ids, limit, offset):
            if not message.storage_path:
                report.add(
                    StorageCheckDetail(
                        message_id=message.id, status="error", reason="no storage path"
                    )
                )
                continue
            expected = self._store.public_url(message.storage_path)
            if message.public_url == expected:
                report.add(
                    StorageCheckDetail(
                        message_id=message.id,
                        status="valid",
                        storage_path=message.storage_path,
                    )
                )
                continue
            try:
                self._repository.update_message(message.id, {"public_url": expected})
            except MediaIngestError as e:
                report.add(
                    StorageCheckDetail(
                        message_id=message.id,
                        status="error",
                        storage_path=message.storage_path,
                        reason=str(e),
                    )
                )
                continue
            report.add(
                StorageCheckDetail(
                    message_id=message.id,
                    status="repaired",
                    storage_path=message.storage_path,
                    reason="public_url rewritten",
                )
            )
        return report

    # === repair ===

    def repair(
        self,
        message_ids: list[UUID] | None = None,
        *,
        limit: int = DEFAULT_BATCH_SIZE,
        offset: int = 0,
        correlation_id: str | None = None,
    ) -> StorageReport:
        """Standardize paths, fix URLs, then validate, as one pass.

        The returned report has one entry per message: the validation result,
        marked repaired when an earlier step changed the row.
        """
        messages = self._batch(message_ids, limit, offset)
        ids = [message.id for message in messages]
        if not ids:
            return StorageReport()

        path_report = self.standardize_paths(ids, limit=len(ids))
        url_report = self.fix_urls(ids, limit=len(ids))
        changed = {
            detail.message_id
            for detail in [*path_report.details, *url_report.details]
            if detail.status == "repaired"
        }
        path_errors = {
            detail.message_id: detail.reason
            for detail in path_report.details
            if detail.status == "error" and detail.storage_path
        }

        report = StorageReport()
        for detail in self.validate(ids, limit=len(ids), correlation_id=correlation_id).details:
            if detail.status == "valid" and detail.message_id in changed:
                detail = detail.model_copy(update={"status": "repaired"})
            elif detail.status == "valid" and detail.message_id in path_errors:
                detail = detail.model_copy(
                    update={"status": "error", "reason": path_errors[detail.message_id]}
                )
            report.add(detail)
        return report

    # === redownload ===

    def redownload(
        self, message_id: UUID, *, correlation_id: str | None = None
    ) -> RedownloadResult:
        """Fetch a message's media from Telegram again.

        The persistent attempt counter is bumped before trying, so a crash
        mid-download still counts against the cap.
        """
        message = self._repository.get_message(message_id)
        if message is None:
            raise DataIntegrityError(f"Message {message_id} not found")
        if message.redownload_attempts >= self._max_redownload_attempts:
            logger.warning(
                "media_redownload_cap_reached",
                message_id=str(message_id),
                attempts=message.redownload_attempts,
            )
            return RedownloadResult(
                message_id=message_id,
                success=False,
                attempts=message.redownload_attempts,
                reason="redownload attempt cap reached",
            )

        attempts = self._repository.increment_redownload_attempts(message_id)
        try:
            result = self._acquirer.acquire_with_fallback(message)
        except (FileReferenceExpiredError, AcquisitionError) as e:
            reason = str(e)
            self._repository.update_message(
                message_id,
                {
                    "needs_redownload": True,
                    "redownload_reason": reason,
                    "redownload_flagged_at": utc_now(),
                },
            )
            logger.warning(
                "media_redownload_failed",
                message_id=str(message_id),
                attempts=attempts,
                error=reason,
            )
            return RedownloadResult(
                message_id=message_id, success=False, attempts=attempts, reason=reason
            )

        self._acquirer.record_stored(message_id, result)
        self._repository.record_event(
            AuditEvent(
                event_type="file_redownloaded",
                entity_id=str(message_id),
                correlation_id=correlation_id,
                metadata={
                    "file_unique_id": message.file_unique_id,
                    "storage_path": result.storage_path,
                    "file_id_used": result.file_id,
                    "from_sibling": result.file_id != message.file_id,
                    "attempts": attempts,
                },
            )
        )
        logger.info(
            "media_redownloaded",
            message_id=str(message_id),
            storage_path=result.storage_path,
            attempts=attempts,
        )
        return RedownloadResult(
            message_id=message_id,
            success=True,
            storage_path=result.storage_path,
            file_id_used=result.file_id,
            attempts=attempts,
        )

    def redownload_flagged(
        self, *, limit: int = DEFAULT_BATCH_SIZE, correlation_id: str | None = None
    ) -> list[RedownloadResult]:
        """Redownload flagged messages that still have attempts left."""
        results: list[RedownloadResult] = []
        candidates = self._repository.list_redownload_candidates(
            max_attempts=self._max_redownload_attempts, limit=limit
        )
        for message in candidates:
            try:
                results.append(self.redownload(message.id, correlation_id=correlation_id))
            except MediaIngestError as e:
                logger.error(
                    "media_redownload_error",
                    message_id=str(message.id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                results.append(
                    RedownloadResult(
                        message_id=message.id,
                        success=False,
                        attempts=message.redownload_attempts,
                        reason=str(e),
                    )
                )
        return results


__all__ = ["StorageMaintenance"]
