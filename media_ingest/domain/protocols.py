"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from media_ingest.domain.models import AuditEvent, Message, ProcessingState
from media_ingest.ports.task_queue import TaskQueuePort


class AuditSink(Protocol):
    """Destination for audit entries."""

    def record_event(self, event: AuditEvent) -> None: ...


class MessageRepository(AuditSink, Protocol):
    """Relational store holding the ``messages`` table.

    All writes are single statements; ``transition_state`` is the only
    conditional update and is what makes claims exclusive.
    """

    def insert_message(self, message: Message) -> Message:
        """Insert a new message.

        Raises:
            DuplicateRecordError: If a non-deleted row already has the same
                ``(chat_id, platform_message_id)``
            RepositoryError: On storage errors
        """
        ...

    def get_message(self, message_id: UUID) -> Message | None: ...

    def find_by_platform_id(
        self, chat_id: int, platform_message_id: int
    ) -> Message | None:
        """Return the non-deleted message for a chat/message id pair."""
        ...

    def update_message(self, message_id: UUID, fields: dict[str, Any]) -> bool:
        """Overwrite the given columns; returns False when the row is missing."""
        ...

    def transition_state(
        self,
        message_id: UUID,
        from_states: Iterable[ProcessingState],
        to_state: ProcessingState,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Conditionally move a message between states.

        Returns:
            True when exactly one row changed, False when the message was not in
            one of ``from_states`` (someone else got there first)
        """
        ...

    def list_group_messages(self, media_group_id: str) -> list[Message]:
        """Non-deleted group members ordered by creation time ascending."""
        ...

    def find_stored_media(self, file_unique_id: str) -> list[Message]:
        """Messages already holding a stored object for this content id."""
        ...

    def list_by_state(self, state: ProcessingState, limit: int) -> list[Message]: ...

    def find_stalled(self, stale_before: datetime, limit: int) -> list[Message]: ...

    def release_stalled(
        self,
        message_id: UUID,
        stale_before: datetime,
        to_state: ProcessingState,
        fields: dict[str, Any] | None = None,
        *,
        increment_retry: bool = False,
    ) -> bool:
        """Move a processing row out of processing only while it is still stale.

        ``increment_retry`` bumps ``retry_count`` in the same statement.
        """
        ...

    def list_media_messages(
        self,
        *,
        limit: int,
        offset: int = 0,
        message_ids: list[UUID] | None = None,
    ) -> list[Message]: ...

    def list_redownload_candidates(
        self, *, max_attempts: int, limit: int
    ) -> list[Message]: ...

    def list_groups_needing_sync(self, limit: int) -> list[str]: ...

    def count_by_state(self) -> dict[str, int]: ...

    def count_needs_redownload(self) -> int: ...

    def count_stalled(self, stale_before: datetime) -> int: ...

    def increment_redownload_attempts(self, message_id: UUID) -> int:
        """Bump the persistent redownload counter and return its new value."""
        ...

    def list_audit_events(
        self,
        *,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]: ...

    def count_file_references(self, file_unique_id: str, exclude_id: UUID) -> int: ...

    def delete_message(self, message_id: UUID) -> bool: ...

    def task_queue(self) -> TaskQueuePort: ...


class ObjectStorePort(Protocol):
    """Binary object storage."""

    def upload(
        self, key: str, data: bytes, content_type: str, *, upsert: bool = True
    ) -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        ...

    def exists(self, key: str) -> bool: ...

    def download(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def public_url(self, key: str) -> str: ...


class TelegramBotPort(Protocol):
    """The slice of the Bot API the service uses."""

    def get_file_path(self, file_id: str) -> str:
        """Resolve a ``file_id`` to a downloadable path.

        Raises:
            FileReferenceExpiredError: If Telegram no longer knows the file
            TelegramAPIError: On other API failures
        """
        ...

    def download_file(self, file_path: str) -> bytes: ...

    def edit_message_caption(self, chat_id: int, message_id: int, caption: str) -> None: ...

    def delete_message(self, chat_id: int, message_id: int) -> None: ...


class AICompletionPort(Protocol):
    """Optional completion service used for low-confidence captions."""

    def complete(self, prompt: str) -> str: ...
