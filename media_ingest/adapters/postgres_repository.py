"""PostgreSQL repository implementation using psycopg2 with connection pooling."""

from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final
from uuid import UUID

from psycopg2 import Error as PsycopgError
from psycopg2 import IntegrityError as PsycopgIntegrityError
from psycopg2 import extensions, sql
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor, register_uuid

from media_ingest.adapters.message_rows import (
    AUDIT_COLUMNS,
    MESSAGE_COLUMNS,
    audit_event_to_row,
    encode_fields,
    message_to_row,
    row_to_audit_event,
    row_to_message,
)
from media_ingest.adapters.postgres_task_queue import PostgresTaskQueue
from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import DuplicateRecordError, RepositoryError
from media_ingest.domain.models import AuditEvent, Message, ProcessingState, utc_now
from media_ingest.ports.task_queue import TaskQueuePort
from media_ingest.services.retry import RetryExecutor, retrying

if TYPE_CHECKING:
    from media_ingest.config.settings import Settings

POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0
_DELETED: Final[str] = ProcessingState.DELETED.value
_PROCESSING: Final[str] = ProcessingState.PROCESSING.value

logger = get_logger(__name__)

_UUID_ADAPTER_REGISTERED: bool = False
_UUID_ADAPTER_LOCK: Lock = Lock()


def _ensure_uuid_adapter_registered() -> None:
    global _UUID_ADAPTER_REGISTERED
    if _UUID_ADAPTER_REGISTERED:
        return

    with _UUID_ADAPTER_LOCK:
        if _UUID_ADAPTER_REGISTERED:
            return
        register_uuid()
        _UUID_ADAPTER_REGISTERED = True


def _assignments(values: dict[str, Any]) -> sql.Composed:
    return sql.SQL(", ").join(
        sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
    )


class PostgresRepository:
    """PostgreSQL message repository backed by a ThreadedConnectionPool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
        *,
        retry_executor: RetryExecutor | None = None,
        pool: psycopg2_pool.ThreadedConnectionPool | None = None,
    ):
        """Initialize PostgreSQL repository with pooled connections.

        Args:
            host, port, database, user, password: Connection parameters
            settings: Source of pool sizes and timeouts
            retry_executor: Executor for transient database failures
            pool: Pre-built pool (tests)
        """
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password

        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "telegram_media_ingest"
        )
        self._pool_min_connections = settings.postgres_min_connections if settings else 1
        self._pool_max_connections = settings.postgres_max_connections if settings else 10
        self._ssl_mode = settings.postgres_ssl_mode if settings else None

        if self._pool_min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        self._retry_executor = retry_executor or RetryExecutor()
        self._task_queue_adapter: PostgresTaskQueue | None = None

        _ensure_uuid_adapter_registered()
        self._pool = pool or self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        options = " ".join(
            [
                f"-c statement_timeout={self._statement_timeout_ms}",
                f"-c application_name={self._application_name}",
            ]
        )
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": options,
        }
        if self._ssl_mode:
            conn_kwargs["sslmode"] = self._ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
            statement_timeout_ms=self._statement_timeout_ms,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                return self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc
                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)

    def close(self) -> None:
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)

    def task_queue(self) -> TaskQueuePort:
        if self._task_queue_adapter is None:

            def _provider() -> AbstractContextManager[Any]:
                return self._get_connection()

            self._task_queue_adapter = PostgresTaskQueue(_provider)
        return self._task_queue_adapter

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection from the pool and ensure cleanup."""
        conn: extensions.connection | None = None
        close = False
        try:
            conn = self._acquire_connection_with_retry()
            conn.autocommit = False
            yield conn
        except PsycopgIntegrityError:
            close = self._rollback(conn)
            raise
        except PsycopgError as exc:
            self._rollback(conn)
            close = True
            raise RepositoryError(f"PostgreSQL error: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    if conn.get_transaction_status() in (
                        extensions.TRANSACTION_STATUS_INTRANS,
                        extensions.TRANSACTION_STATUS_INERROR,
                    ):
                        conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_cleanup_failed",
                        database=self._database,
                        exc_info=True,
                    )
                    close = True
                self._pool.putconn(conn, close=close)

    def _rollback(self, conn: extensions.connection | None) -> bool:
        """Roll back after an error; True when the connection should be discarded."""
        if conn is None:
            return False
        try:
            conn.rollback()
        except PsycopgError:
            logger.warning(
                "postgres_connection_rollback_failed",
                database=self._database,
                exc_info=True,
            )
            return True
        return False

    def _fetch_all(self, query: Any, params: Iterable[Any]) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, list(params))
                rows = cur.fetchall()
            conn.commit()
        return [dict(row) for row in rows]

    def _fetch_messages(self, query: Any, params: Iterable[Any]) -> list[Message]:
        return [row_to_message(row) for row in self._fetch_all(query, params)]

    def _execute_write(self, query: Any, params: Iterable[Any]) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, list(params))
                rowcount = cur.rowcount
            conn.commit()
        return rowcount

    def _count(self, query: str, params: Iterable[Any]) -> int:
        rows = self._fetch_all(query, params)
        return int(rows[0]["count"]) if rows else 0

    # === Messages ===

    @retrying("insert_message")
    def insert_message(self, message: Message) -> Message:
        row = message_to_row(message, datetime_as_text=False)
        query = sql.SQL("INSERT INTO messages ({}) VALUES ({})").format(
            sql.SQL(", ").join(sql.Identifier(column) for column in MESSAGE_COLUMNS),
            sql.SQL(", ").join(sql.Placeholder() for _ in MESSAGE_COLUMNS),
        )
        try:
            self._execute_write(query, [row[column] for column in MESSAGE_COLUMNS])
        except PsycopgIntegrityError as e:
            raise DuplicateRecordError(
                f"Message {message.chat_id}/{message.platform_message_id} already exists"
            ) from e
        return message

    @retrying("get_message")
    def get_message(self, message_id: UUID) -> Message | None:
        messages = self._fetch_messages(
            "SELECT * FROM messages WHERE id = %s", [str(message_id)]
        )
        return messages[0] if messages else None

    @retrying("find_by_platform_id")
    def find_by_platform_id(
        self, chat_id: int, platform_message_id: int
    ) -> Message | None:
        messages = self._fetch_messages(
            """
            SELECT * FROM messages
            WHERE chat_id = %s AND platform_message_id = %s
              AND processing_state != %s
            """,
            [chat_id, platform_message_id, _DELETED],
        )
        return messages[0] if messages else None

    @retrying("update_message")
    def update_message(self, message_id: UUID, fields: dict[str, Any]) -> bool:
        values = encode_fields(
            {**fields, "updated_at": utc_now()}, datetime_as_text=False
        )
        query = sql.SQL("UPDATE messages SET {} WHERE id = %s").format(
            _assignments(values)
        )
        return self._execute_write(query, [*values.values(), str(message_id)]) == 1

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
            datetime_as_text=False,
        )
        query = sql.SQL(
            "UPDATE messages SET {} WHERE id = %s AND processing_state = ANY(%s)"
        ).format(_assignments(values))
        changed = self._execute_write(
            query, [*values.values(), str(message_id), expected]
        )
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
            datetime_as_text=False,
        )
        query = sql.SQL(
            """
            UPDATE messages SET {}, retry_count = retry_count + %s
            WHERE id = %s AND processing_state = %s
              AND (processing_started_at IS NULL OR processing_started_at < %s)
            """
        ).format(_assignments(values))
        changed = self._execute_write(
            query,
            [
                *values.values(),
                1 if increment_retry else 0,
                str(message_id),
                _PROCESSING,
                stale_before,
            ],
        )
        return changed == 1

    @retrying("list_group_messages")
    def list_group_messages(self, media_group_id: str) -> list[Message]:
        return self._fetch_messages(
            """
            SELECT * FROM messages
            WHERE media_group_id = %s AND processing_state != %s
            ORDER BY created_at ASC, platform_message_id ASC
            """,
            [media_group_id, _DELETED],
        )

    @retrying("find_stored_media")
    def find_stored_media(self, file_unique_id: str) -> list[Message]:
        return self._fetch_messages(
            """
            SELECT * FROM messages
            WHERE file_unique_id = %s AND storage_path IS NOT NULL
              AND NOT needs_redownload
            ORDER BY created_at ASC
            """,
            [file_unique_id],
        )

    @retrying("list_by_state")
    def list_by_state(self, state: ProcessingState, limit: int) -> list[Message]:
        return self._fetch_messages(
            """
            SELECT * FROM messages WHERE processing_state = %s
            ORDER BY created_at ASC LIMIT %s
            """,
            [state.value, limit],
        )

    @retrying("find_stalled")
    def find_stalled(self, stale_before: datetime, limit: int) -> list[Message]:
        return self._fetch_messages(
            """
            SELECT * FROM messages
            WHERE processing_state = %s
              AND (processing_started_at IS NULL OR processing_started_at < %s)
            ORDER BY processing_started_at ASC NULLS FIRST LIMIT %s
            """,
            [_PROCESSING, stale_before, limit],
        )

    @retrying("list_media_messages")
    def list_media_messages(
        self,
        *,
        limit: int,
        offset: int = 0,
        message_ids: list[UUID] | None = None,
    ) -> list[Message]:
        conditions = ["file_unique_id IS NOT NULL", "processing_state != %s"]
        params: list[Any] = [_DELETED]
        if message_ids:
            conditions.append("id = ANY(%s::uuid[])")
            params.append([str(message_id) for message_id in message_ids])
        params.extend([limit, offset])
        return self._fetch_messages(
            f"""
            SELECT * FROM messages WHERE {" AND ".join(conditions)}
            ORDER BY created_at ASC LIMIT %s OFFSET %s
            """,
            params,
        )

    @retrying("list_redownload_candidates")
    def list_redownload_candidates(
        self, *, max_attempts: int, limit: int
    ) -> list[Message]:
        return self._fetch_messages(
            """
            SELECT * FROM messages
            WHERE needs_redownload AND redownload_attempts < %s
              AND processing_state != %s
            ORDER BY redownload_flagged_at ASC NULLS LAST LIMIT %s
            """,
            [max_attempts, _DELETED, limit],
        )

    @retrying("list_groups_needing_sync")
    def list_groups_needing_sync(self, limit: int) -> list[str]:
        rows = self._fetch_all(
            """
            SELECT DISTINCT src.media_group_id
            FROM messages AS src
            JOIN messages AS sibling
              ON sibling.media_group_id = src.media_group_id
             AND sibling.id != src.id
            WHERE src.media_group_id IS NOT NULL
              AND src.analyzed_content IS NOT NULL
              AND src.processing_state NOT IN (%s, %s)
              AND sibling.processing_state NOT IN (%s, %s)
              AND (sibling.analyzed_content IS NULL
                   OR NOT sibling.group_caption_synced)
            LIMIT %s
            """,
            [_PROCESSING, _DELETED, _PROCESSING, _DELETED, limit],
        )
        return [row["media_group_id"] for row in rows]

    @retrying("count_by_state")
    def count_by_state(self) -> dict[str, int]:
        rows = self._fetch_all(
            """
            SELECT processing_state, COUNT(*) AS count
            FROM messages GROUP BY processing_state
            """,
            [],
        )
        return {row["processing_state"]: int(row["count"]) for row in rows}

    @retrying("count_needs_redownload")
    def count_needs_redownload(self) -> int:
        return self._count(
            """
            SELECT COUNT(*) AS count FROM messages
            WHERE needs_redownload AND processing_state != %s
            """,
            [_DELETED],
        )

    @retrying("count_stalled")
    def count_stalled(self, stale_before: datetime) -> int:
        return self._count(
            """
            SELECT COUNT(*) AS count FROM messages
            WHERE processing_state = %s
              AND (processing_started_at IS NULL OR processing_started_at < %s)
            """,
            [_PROCESSING, stale_before],
        )

    @retrying("count_file_references")
    def count_file_references(self, file_unique_id: str, exclude_id: UUID) -> int:
        return self._count(
            """
            SELECT COUNT(*) AS count FROM messages
            WHERE file_unique_id = %s AND id != %s
            """,
            [file_unique_id, str(exclude_id)],
        )

    @retrying("increment_redownload_attempts")
    def increment_redownload_attempts(self, message_id: UUID) -> int:
        rows = self._fetch_all(
            """
            UPDATE messages
            SET redownload_attempts = redownload_attempts + 1, updated_at = %s
            WHERE id = %s
            RETURNING redownload_attempts
            """,
            [utc_now(), str(message_id)],
        )
        if not rows:
            raise RepositoryError(f"Message not found: {message_id}")
        return int(rows[0]["redownload_attempts"])

    @retrying("delete_message")
    def delete_message(self, message_id: UUID) -> bool:
        return (
            self._execute_write("DELETE FROM messages WHERE id = %s", [str(message_id)])
            == 1
        )

    # === Audit log ===

    @retrying("record_event")
    def record_event(self, event: AuditEvent) -> None:
        row = audit_event_to_row(event, datetime_as_text=False)
        self._execute_write(
            f"""
            INSERT INTO audit_log ({", ".join(AUDIT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(AUDIT_COLUMNS))})
            """,
            [row[column] for column in AUDIT_COLUMNS],
        )

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
            conditions.append("entity_id = %s")
            params.append(entity_id)
        if event_type is not None:
            conditions.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self._fetch_all(
            f"SELECT * FROM audit_log {where} ORDER BY created_at ASC, id ASC LIMIT %s",
            params,
        )
        return [row_to_audit_event(row) for row in rows]


__all__ = ["PostgresRepository"]
