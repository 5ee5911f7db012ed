"""Media group synchronization use case.

Keeps analyzed content identical across every message of a Telegram album.
One message (the "original caption" message) is the source; its content is
copied to all siblings, and whatever a sibling held before is archived into
its ``old_analyzed_content`` history.

Concurrent syncs of the same group are not serialized. Final field values
converge because every pass writes the same values, but two racing passes may
both append a history entry.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
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
    ContentSnapshot,
    GroupSyncResult,
    Message,
    ParsedContent,
    ProcessingState,
    SiblingSyncResult,
    utc_now,
)
from media_ingest.domain.processing_constants import (
    INCONSISTENT_GROUP_BATCH_SIZE,
    MEDIA_GROUP_RECHECK_DELAY,
)
from media_ingest.domain.protocols import MessageRepository
from media_ingest.domain.task_queue import (
    TaskCreate,
    TaskStatus,
    TaskType,
    media_group_recheck_key,
)
from media_ingest.observability.metrics import GROUP_SYNC_MESSAGES_TOTAL
from media_ingest.use_cases.processing_state import ProcessingStateMachine

logger = get_logger(__name__)

SYNC_HISTORY_REASON = "group_sync"
NO_SOURCE_ERROR = "No caption source found in media group after recheck"


def elect_source(members: list[Message]) -> Message | None:
    """Pick the message whose analyzed content the group should carry.

    A message already flagged ``is_original_caption`` wins; otherwise the
    earliest created message that has both a caption and analyzed content.
    Members are expected in creation order.

    Args:
        members: Non-deleted group members, oldest first

    Returns:
        The source message, or None when no member qualifies yet
    """
    flagged = [
        m for m in members if m.is_original_caption and m.analyzed_content is not None
    ]
    if flagged:
        return min(flagged, key=lambda m: m.created_at)

    candidates = [m for m in members if m.has_caption and m.analyzed_content is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda m: m.created_at)


def _same_content(left: ParsedContent | None, right: ParsedContent | None) -> bool:
    if left is None or right is None:
        return left is right
    return left.without_timestamps() == right.without_timestamps()


def _merge_history(
    existing: list[ContentSnapshot], incoming: list[ContentSnapshot]
) -> list[ContentSnapshot]:
    """Append snapshots from ``incoming`` that ``existing`` does not hold yet."""
    seen = {snapshot.model_dump_json() for snapshot in existing}
    merged = list(existing)
    for snapshot in incoming:
        key = snapshot.model_dump_json()
        if key not in seen:
            merged.append(snapshot)
            seen.add(key)
    return merged


class MediaGroupSynchronizer:
    """Propagates a source message's analyzed content to its album siblings.

    Implements the group-content sync port used by the caption workflow and
    the ingest coordinator.
    """

    def __init__(
        self,
        repository: MessageRepository,
        state_machine: ProcessingStateMachine,
        *,
        recheck_delay: timedelta = MEDIA_GROUP_RECHECK_DELAY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._recheck_delay = recheck_delay
        self._clock = clock

    # === GroupSyncPort ===

    def sync_group_content(
        self,
        message_id: UUID,
        content: ParsedContent | None = None,
        *,
        force_sync: bool = False,
        sync_edit_history: bool = False,
        correlation_id: str | None = None,
    ) -> GroupSyncResult:
        """Sync the group of ``message_id`` using that message as the source."""
        message = self._repository.get_message(message_id)
        if message is None:
            raise DataIntegrityError(f"Message {message_id} not found")
        if not message.media_group_id:
            raise ValidationError(f"Message {message_id} is not part of a media group")
        return self.sync(
            message.media_group_id,
            message_id,
            content,
            force_sync=force_sync,
            sync_edit_history=sync_edit_history,
            correlation_id=correlation_id,
        )

    # === Core sync ===

    def sync(
        self,
        media_group_id: str,
        source_message_id: UUID | None = None,
        content: ParsedContent | None = None,
        *,
        force_sync: bool = False,
        sync_edit_history: bool = False,
        correlation_id: str | None = None,
    ) -> GroupSyncResult:
        """Copy the source's analyzed content to every other group member.

        Args:
            media_group_id: Album identifier
            source_message_id: Explicit source; elected when omitted
            content: Content to propagate; defaults to the source's own
            force_sync: Rewrite siblings even when they already match
            sync_edit_history: Also copy the source's content history
            correlation_id: Threaded into audit records

        Returns:
            Per-sibling outcomes; individual failures never abort the batch

        Raises:
            DataIntegrityError: If the source is missing from the group or has
                no content to propagate
        """
        members = self._repository.list_group_messages(media_group_id)
        if source_message_id is None:
            source = elect_source(members)
            if source is None:
                logger.info("media_group_no_source", media_group_id=media_group_id)
                return GroupSyncResult(media_group_id=media_group_id, reason="no_source")
        else:
            source = next((m for m in members if m.id == source_message_id), None)
            if source is None:
                raise DataIntegrityError(
                    f"Message {source_message_id} is not a member of media group "
                    f"{media_group_id}"
                )

        source_content = content or source.analyzed_content
        if source_content is None:
            raise DataIntegrityError(
                f"Source message {source.id} has no analyzed content to sync"
            )

        result = GroupSyncResult(
            media_group_id=media_group_id, source_message_id=source.id
        )
        now = self._clock()

        source_fields: dict[str, Any] = {
            "is_original_caption": True,
            "group_caption_synced": True,
            "message_caption_id": source.id,
        }
        if source.analyzed_content is None:
            source_fields["analyzed_content"] = source_content
        self._repository.update_message(source.id, source_fields)

        for sibling in members:
            if sibling.id == source.id:
                continue
            outcome = self._sync_sibling(
                sibling,
                source,
                source_content,
                now=now,
                force_sync=force_sync,
                sync_edit_history=sync_edit_history,
            )
            GROUP_SYNC_MESSAGES_TOTAL.labels(outcome=outcome.status).inc()
            result.per_message_results.append(outcome)
            if outcome.status == "updated":
                result.updated_count += 1

        self._repository.record_event(
            AuditEvent(
                event_type="media_group_content_synced",
                entity_id=str(source.id),
                correlation_id=correlation_id,
                metadata={
                    "media_group_id": media_group_id,
                    "source_message_id": str(source.id),
                    "synced_messages": result.updated_count,
                    "failed_messages": result.failed_count,
                    "forced_sync": force_sync,
                    "synced_edit_history": sync_edit_history,
                },
            )
        )
        logger.info(
            "media_group_synced",
            media_group_id=media_group_id,
            source_message_id=str(source.id),
            updated=result.updated_count,
            failed=result.failed_count,
            correlation_id=correlation_id,
        )
        return result

    def _sync_sibling(
        self,
        sibling: Message,
        source: Message,
        content: ParsedContent,
        *,
        now: datetime,
        force_sync: bool,
        sync_edit_history: bool,
    ) -> SiblingSyncResult:
        if sibling.processing_state == ProcessingState.PROCESSING:
            # its own workflow is running and will re-sync the group on completion
            return SiblingSyncResult(message_id=sibling.id, status="skipped")

        content_matches = _same_content(sibling.analyzed_content, content)
        already_synced = (
            content_matches
            and sibling.message_caption_id == source.id
            and sibling.group_caption_synced
            and not sibling.is_original_caption
            and sibling.processing_state == ProcessingState.COMPLETED
        )
        if already_synced and not force_sync and not sync_edit_history:
            return SiblingSyncResult(message_id=sibling.id, status="unchanged")

        history = list(sibling.old_analyzed_content)
        if sibling.analyzed_content is not None and not content_matches:
            history.append(
                ContentSnapshot(
                    archived_at=now,
                    reason=SYNC_HISTORY_REASON,
                    source_message_id=source.id,
                    content=sibling.analyzed_content.model_dump(mode="json"),
                )
            )
        if sync_edit_history:
            history = _merge_history(history, source.old_analyzed_content)

        fields: dict[str, Any] = {
            "analyzed_content": content,
            "message_caption_id": source.id,
            "is_original_caption": False,
            "group_caption_synced": True,
            "processing_state": ProcessingState.COMPLETED,
            "processing_completed_at": now,
            "error_message": None,
        }
        if len(history) != len(sibling.old_analyzed_content):
            fields["old_analyzed_content"] = history

        try:
            updated = self._repository.update_message(sibling.id, fields)
        except MediaIngestError as e:
            logger.warning(
                "media_group_sibling_sync_failed",
                media_group_id=sibling.media_group_id,
                message_id=str(sibling.id),
                error=str(e),
            )
            return SiblingSyncResult(message_id=sibling.id, status="failed", error=str(e))

        if not updated:
            return SiblingSyncResult(
                message_id=sibling.id, status="failed", error="message not found"
            )
        return SiblingSyncResult(message_id=sibling.id, status="updated")

    # === Captionless members ===

    def pull_for_message(
        self, message: Message, *, correlation_id: str | None = None
    ) -> GroupSyncResult:
        """Give a captionless group member the group's content.

        When no source exists yet the message is left pending and a single
        delayed recheck of the group is queued.
        """
        if not message.media_group_id:
            raise ValidationError(f"Message {message.id} is not part of a media group")

        members = self._repository.list_group_messages(message.media_group_id)
        source = elect_source(members)
        if source is not None and source.id != message.id:
            return self.sync(
                message.media_group_id, source.id, correlation_id=correlation_id
            )

        if message.processing_state == ProcessingState.INITIALIZED:
            self._state_machine.mark_pending(message.id, correlation_id=correlation_id)
        self.schedule_recheck(message.media_group_id, message.id)
        return GroupSyncResult(
            media_group_id=message.media_group_id, reason="recheck_scheduled"
        )

    def schedule_recheck(self, media_group_id: str, message_id: UUID) -> None:
        queue = self._repository.task_queue()
        run_at = self._clock() + self._recheck_delay
        key = media_group_recheck_key(media_group_id)

        task = queue.enqueue(self._recheck_task(media_group_id, key, run_at))
        if task.status in (TaskStatus.DONE, TaskStatus.FAILED):
            # the group was already rechecked once; this member arrived later
            task = queue.enqueue(
                self._recheck_task(media_group_id, f"{key}:{message_id}", run_at)
            )
        logger.info(
            "media_group_recheck_scheduled",
            media_group_id=media_group_id,
            message_id=str(message_id),
            task_id=str(task.task_id),
            run_at=task.run_at.isoformat(),
        )

    @staticmethod
    def _recheck_task(media_group_id: str, key: str, run_at: datetime) -> TaskCreate:
        return TaskCreate(
            task_type=TaskType.MEDIA_GROUP_RECHECK,
            payload={"media_group_id": media_group_id},
            run_at=run_at,
            idempotency_key=key,
            max_attempts=3,
        )

    def handle_recheck(
        self, media_group_id: str, *, correlation_id: str | None = None
    ) -> GroupSyncResult:
        """Run the delayed recheck for a group.

        If a source appeared meanwhile the group is synced. If a member has a
        caption that is still being analyzed, its own workflow will sync the
        group. Otherwise captionless pending members are moved to error so
        they do not wait forever.
        """
        members = self._repository.list_group_messages(media_group_id)
        if elect_source(members) is not None:
            return self.sync(media_group_id, correlation_id=correlation_id)

        if any(member.has_caption for member in members):
            logger.info("media_group_source_pending", media_group_id=media_group_id)
            return GroupSyncResult(media_group_id=media_group_id, reason="source_pending")

        result = GroupSyncResult(media_group_id=media_group_id, reason="no_source")
        for member in members:
            if member.processing_state != ProcessingState.PENDING:
                continue
            failed = self._state_machine.fail(
                member.id, NO_SOURCE_ERROR, from_states=(ProcessingState.PENDING,)
            )
            result.per_message_results.append(
                SiblingSyncResult(
                    message_id=member.id,
                    status="failed" if failed else "unchanged",
                    error=NO_SOURCE_ERROR if failed else None,
                )
            )
        logger.warning(
            "media_group_recheck_no_source",
            media_group_id=media_group_id,
            errored=result.failed_count,
        )
        return result

    def sync_inconsistent_groups(
        self,
        limit: int = INCONSISTENT_GROUP_BATCH_SIZE,
        *,
        correlation_id: str | None = None,
    ) -> list[GroupSyncResult]:
        """Find groups with unsynced members and sync each one."""
        results: list[GroupSyncResult] = []
        for media_group_id in self._repository.list_groups_needing_sync(limit):
            try:
                results.append(
                    self.sync(media_group_id, correlation_id=correlation_id)
                )
            except MediaIngestError as e:
                logger.error(
                    "media_group_sync_failed",
                    media_group_id=media_group_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                results.append(
                    GroupSyncResult(media_group_id=media_group_id, reason=f"error: {e}")
                )
        return results


__all__ = ["MediaGroupSynchronizer", "elect_source"]
