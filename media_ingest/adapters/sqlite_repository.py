"""SQLite repository adapter for local runs and tests.

Implements MessageRepository with a fresh connection per call. Timestamps are
stored as ISO-8601 UTC text so lexical order matches time order.
"""

import sqlite3
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Final
from uuid import UUID

from media_ingest.adapters.message_rows import (
    AUDIT_COLUMNS,
    MESSAGE_COLUMNS,
    audit_event_to_row,
    encode_fields,
    iso_timestamp,
    message_to_row,
    row_to_audit_event,
    row_to_message,
)
from media_ingest.adapters.sqlite_task_queue import SQLiteTaskQueue
from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import DuplicateRecordError, RepositoryError
from media_ingest.domain.models import AuditEvent, Message, ProcessingState, utc_now
from media_ingest.ports.task_queue import TaskQueuePort
from media_ingest.services.retry import RetryExecutor, retrying

logger = get_logger(__name__)

BUSY_TIMEOUT_SECONDS: Final[float] = 30.0
_DELETED: Final[str] = ProcessingState.DELETED.value

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        platform_message_id INTEGER NOT NULL,
        chat_id INTEGER NOT NULL,
        chat_type TEXT,
        chat_title TEXT,
        media_group_id TEXT,
        is_original_caption INTEGER NOT NULL DEFAULT 0,
        group_caption_synced INTEGER NOT NULL DEFAULT 0,
        message_caption_id TEXT,
        caption TEXT,
        analyzed_content TEXT,
        old_analyzed_content TEXT NOT NULL DEFAULT '[]',
        edit_count INTEGER NOT NULL DEFAULT 0,
        edit_date TEXT,
        file_unique_id TEXT,
        file_id TEXT,
        file_id_expires_at TEXT,
        media_kind TEXT,
        mime_type TEXT,
        file_size INTEGER,
        storage_path TEXT,
        public_url TEXT,
        needs_redownload INTEGER NOT NULL DEFAULT 0,
        redownload_reason TEXT,
        redownload_attempts INTEGER NOT NULL DEFAULT 0,
        redownload_flagged_at TEXT,
        processing_state TEXT NOT NULL DEFAULT 'initialized',
        processing_started_at TEXT,
        processing_completed_at TEXT,
        error_message TEXT,
        last_error_at TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        correlation_id TEXT,
        deleted_from_telegram INTEGER NOT NULL DEFAULT 0,
        deleted_at TEXT,
        telegram_data TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_messages_chat_message
    ON messages (chat_id, platform_message_id)
    WHERE processing_state != '{_DELETED}'
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_messages_group
    ON messages (media_group_id, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_messages_state
    ON messages (processing_state, processing_started_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_messages_file_unique_id
    ON messages (file_unique_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        entity_id TEXT,
        correlation_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_audit_log_entity
    ON audit_log (entity_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_tasks (
        task_id TEXT PRIMARY KEY,
        task_type TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        priority INTEGER NOT NULL,
        run_at TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        idempotency_key TEXT NOT NULL UNIQUE,
        last_error TEXT,
        locked_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_pipeline_tasks_due
    ON pipeline_tasks (status, task_type, run_at)
    """,
)


def _placeholders(count: int) -> str:
    return ",".join(["?"] * count)


class SQLiteRepository:
    """SQLite-backed message repository."""

    def __init__(
        self,
        db_path: str,
        *,
        retry_executor: RetryExecutor | None = None,
        busy_timeout: float = BUSY_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
            retry_executor: Executor used for transient lock errors
            busy_timeout: Seconds a connection waits on a locked database
        """
        self.db_path = db_path
        self._busy_timeout = busy_timeout
        self._retry_executor = retry_executor or RetryExecutor()
        self._task_queue_adapter: SQLiteTaskQueue | None = None

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        conn = self._get_connection()
        try:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create schema: {e}") from e
        finally:
            conn.close()

    def _fetch_messages(self, query: str, params: Iterable[Any]) -> list[Message]:
        conn = self._get_connection()
        try:
            rows = conn.execute(query, list(params)).fetchall()
        finally:
            conn.close()
        return [row_to_message(row) for row in rows]

    def _execute_write(self, query: str, params: Iterable[Any]) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(query, list(params))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def task_queue(self) -> TaskQueuePort:
        """Durable task queue stored in the same database file."""
        if self._task_queue_adapter is None:
            self._task_queue_adapter = SQLiteTaskQueue(self._get_connection)
        return self._task_queue_adapter

    # === Messages ===

    @retrying("insert_message")
    def insert_message(self, message: Message) -> Message:
        row = message_to_row(message, datetime_as_text=True)
        try:
            self._execute_write(
                f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
                f"VALUES ({_placeholders(len(MESSAGE_COLUMNS))})",
                [row[column] for column in MESSAGE_COLUMNS],
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Message {message.chat_id}/{message.platform_message_id} already exists"
            ) from e
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to insert message: {e}") from e
        return message

    @retrying("get_message")
    def get_message(self, message_id: UUID) -> Message | None:
        try:
            messages = self._fetch_messages(
                "SELECT * FROM messages WHERE id = ?", [str(message_id)]
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to get message: {e}") from e
        return messages[0] if messages else None

    @retrying("find_by_platform_id")
    def find_by_platform_id(
        self, chat_id: int, platform_message_id: int
    ) -> Message | None:
        try:
            messages = self._fetch_messages(
                """
                SELECT * FROM messages
                WHERE chat_id = ? AND platform_message_id = ?
                  AND processing_state != ?
                """,
                [chat_id, platform_message_id, _DELETED],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to find message: {e}") from e
        return messages[0] if messages else None

    @retrying("update_message")
    def update_message(self, message_id: UUID, fields: dict[str, Any]) -> bool:
        values = encode_fields(
            {**fields, "updated_at": utc_now()}, datetime_as_text=True
        )
        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            changed = self._execute_write(
                f"UPDATE messages SET {assignments} WHERE id = ?",
                [*values.values(), str(message_id)],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to update message: {e}") from e
        return changed == 1

    @retrying("transition_state")
    def transition_state(
        self,
        message_id: UUID,
        from_states: Iterable[ProcessingState],
        to_state: ProcessingState,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        expected = [state.value for state in from_states]
        if not expected:
            return False
        values = encode_fields(
            {**(fields or {}), "processing_state": to_state, "updated_at": utc_now()},
            datetime_as_text=True,
        )
        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            changed = self._execute_write(
                f"""
                UPDATE messages SET {assignments}
                WHERE id = ? AND processing_state IN ({_placeholders(len(expected))})
                """,
                [*values.values(), str(message_id), *expected],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to transition message: {e}") from e
        return changed == 1

    @retrying("release_stalled")
    def release_stalled(
        self,
        message_id: UUID,
        stale_before: datetime,
        to_state: ProcessingState,
        fields: dict[str, Any] | None = None,
        *,
        increment_retry: bool = False,
    ) -> bool:
        values = encode_fields(
            {**(fields or {}), "processing_state": to_state, "updated_at": utc_now()},
            datetime_as_text=True,
        )
        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            changed = self._execute_write(
                f"""
                UPDATE messages
                SET {assignments}, retry_count = retry_count + ?
                WHERE id = ? AND processing_state = ?
                  AND (processing_started_at IS NULL OR processing_started_at < ?)
                """,
                [
                    *values.values(),
                    1 if increment_retry else 0,
                    str(message_id),
                    ProcessingState.PROCESSING.value,
                    iso_timestamp(stale_before),
                ],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to release stalled message: {e}") from e
        return changed == 1

    @retrying("list_group_messages")
    def list_group_messages(self, media_group_id: str) -> list[Message]:
        try:
            return self._fetch_messages(
                """
                SELECT * FROM messages
                WHERE media_group_id = ? AND processing_state != ?
                ORDER BY created_at ASC, platform_message_id ASC
                """,
                [media_group_id, _DELETED],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list group messages: {e}") from e

    @retrying("find_stored_media")
    def find_stored_media(self, file_unique_id: str) -> list[Message]:
        try:
            return self._fetch_messages(
                """
                SELECT * FROM messages
                WHERE file_unique_id = ? AND storage_path IS NOT NULL
                  AND needs_redownload = 0
                ORDER BY created_at ASC
                """,
                [file_unique_id],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to find stored media: {e}") from e

    @retrying("list_by_state")
    def list_by_state(self, state: ProcessingState, limit: int) -> list[Message]:
        try:
            return self._fetch_messages(
                """
                SELECT * FROM messages WHERE processing_state = ?
                ORDER BY created_at ASC LIMIT ?
                """,
                [state.value, limit],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list messages by state: {e}") from e

    @retrying("find_stalled")
    def find_stalled(self, stale_before: datetime, limit: int) -> list[Message]:
        try:
            return self._fetch_messages(
                """
                SELECT * FROM messages
                WHERE processing_state = ?
                  AND (processing_started_at IS NULL OR processing_started_at < ?)
                ORDER BY processing_started_at ASC LIMIT ?
                """,
                [ProcessingState.PROCESSING.value, iso_timestamp(stale_before), limit],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to find stalled messages: {e}") from e

    @retrying("list_media_messages")
    def list_media_messages(
        self,
        *,
        limit: int,
        offset: int = 0,
        message_ids: list[UUID] | None = None,
    ) -> list[Message]:
        conditions = ["file_unique_id IS NOT NULL", "processing_state != ?"]
        params: list[Any] = [_DELETED]
        if message_ids:
            conditions.append(f"id IN ({_placeholders(len(message_ids))})")
            params.extend(str(message_id) for message_id in message_ids)
        params.extend([limit, offset])
        try:
            return self._fetch_messages(
                f"""
                SELECT * FROM messages WHERE {" AND ".join(conditions)}
                ORDER BY created_at ASC LIMIT ? OFFSET ?
                """,
                params,
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list media messages: {e}") from e

    @retrying("list_redownload_candidates")
    def list_redownload_candidates(
        self, *, max_attempts: int, limit: int
    ) -> list[Message]:
        try:
            return self._fetch_messages(
                """
                SELECT * FROM messages
                WHERE needs_redownload = 1 AND redownload_attempts < ?
                  AND processing_state != ?
                ORDER BY redownload_flagged_at ASC LIMIT ?
                """,
                [max_attempts, _DELETED, limit],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list redownload candidates: {e}") from e

    @retrying("list_groups_needing_sync")
    def list_groups_needing_sync(self, limit: int) -> list[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT DISTINCT src.media_group_id
                FROM messages AS src
                JOIN messages AS sibling
                  ON sibling.media_group_id = src.media_group_id
                 AND sibling.id != src.id
                WHERE src.media_group_id IS NOT NULL
                  AND src.analyzed_content IS NOT NULL
                  AND src.processing_state NOT IN (?, ?)
                  AND sibling.processing_state NOT IN (?, ?)
                  AND (sibling.analyzed_content IS NULL
                       OR sibling.group_caption_synced = 0)
                LIMIT ?
                """,
                [
                    ProcessingState.PROCESSING.value,
                    _DELETED,
                    ProcessingState.PROCESSING.value,
                    _DELETED,
                    limit,
                ],
            ).fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list groups needing sync: {e}") from e
        finally:
            conn.close()
        return [row[0] for row in rows]

    @retrying("count_by_state")
    def count_by_state(self) -> dict[str, int]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT processing_state, COUNT(*) FROM messages GROUP BY processing_state"
            ).fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to count messages: {e}") from e
        finally:
            conn.close()
        return {row[0]: row[1] for row in rows}

    def _count(self, query: str, params: list[Any]) -> int:
        conn = self._get_connection()
        try:
            row = conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to count messages: {e}") from e
        finally:
            conn.close()
        return int(row[0]) if row else 0

    @retrying("count_needs_redownload")
    def count_needs_redownload(self) -> int:
        return self._count(
            "SELECT COUNT(*) FROM messages WHERE needs_redownload = 1 "
            "AND processing_state != ?",
            [_DELETED],
        )

    @retrying("count_stalled")
    def count_stalled(self, stale_before: datetime) -> int:
        return self._count(
            """
            SELECT COUNT(*) FROM messages
            WHERE processing_state = ?
              AND (processing_started_at IS NULL OR processing_started_at < ?)
            """,
            [ProcessingState.PROCESSING.value, iso_timestamp(stale_before)],
        )

    @retrying("count_file_references")
    def count_file_references(self, file_unique_id: str, exclude_id: UUID) -> int:
        return self._count(
            "SELECT COUNT(*) FROM messages WHERE file_unique_id = ? AND id != ?",
            [file_unique_id, str(exclude_id)],
        )

    @retrying("increment_redownload_attempts")
    def increment_redownload_attempts(self, message_id: UUID) -> int:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                UPDATE messages
                SET redownload_attempts = redownload_attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                [iso_timestamp(utc_now()), str(message_id)],
            )
            row = conn.execute(
                "SELECT redownload_attempts FROM messages WHERE id = ?",
                [str(message_id)],
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to increment redownload attempts: {e}") from e
        finally:
            conn.close()
        if row is None:
            raise RepositoryError(f"Message not found: {message_id}")
        return int(row[0])

    @retrying("delete_message")
    def delete_message(self, message_id: UUID) -> bool:
        try:
            changed = self._execute_write(
                "DELETE FROM messages WHERE id = ?", [str(message_id)]
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to delete message: {e}") from e
        return changed == 1

    # === Audit log ===

    @retrying("record_event")
    def record_event(self, event: AuditEvent) -> None:
        row = audit_event_to_row(event, datetime_as_text=True)
        try:
            self._execute_write(
                f"INSERT INTO audit_log ({', '.join(AUDIT_COLUMNS)}) "
                f"VALUES ({_placeholders(len(AUDIT_COLUMNS))})",
                [row[column] for column in AUDIT_COLUMNS],
            )
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to record audit event: {e}") from e

    @retrying("list_audit_events")
    def list_audit_events(
        self,
        *,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        conditions: list[str] = []
        params: list[Any] = []
        if entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(entity_id)
        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY id ASC LIMIT ?", params
            ).fetchall()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to list audit events: {e}") from e
        finally:
            conn.close()
        return [row_to_audit_event(row) for row in rows]


__all__ = ["SQLiteRepository"]
