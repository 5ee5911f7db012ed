"""PostgreSQL implementation of the task queue port."""

from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import Any, Final
from uuid import UUID, uuid4

from psycopg2.extras import RealDictCursor

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import RepositoryError
from media_ingest.domain.task_queue import Task, TaskCreate, TaskStatus, TaskType
from media_ingest.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)

_INSERT_TASK: Final[str] = """
    INSERT INTO pipeline_tasks (
        task_id, task_type, payload, priority, run_at, status, attempts,
        max_attempts, idempotency_key, last_error, locked_at
    ) VALUES (%s, %s, %s, %s, %s, %s, 0, %s, %s, NULL, NULL)
    ON CONFLICT (idempotency_key) DO NOTHING
"""

_LEASE_TASKS: Final[str] = """
    WITH due AS (
        SELECT task_id
        FROM pipeline_tasks
        WHERE status = %s AND task_type = %s AND run_at <= %s
        ORDER BY priority ASC, run_at ASC
        FOR UPDATE SKIP LOCKED
        LIMIT %s
    )
    UPDATE pipeline_tasks AS t
    SET status = %s, attempts = t.attempts + 1, locked_at = %s, updated_at = %s
    FROM due
    WHERE t.task_id = due.task_id
    RETURNING t.*
"""


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PostgresTaskQueue(TaskQueuePort):
    """Task queue backed by the ``pipeline_tasks`` table.

    ``connection_provider`` yields a pooled connection and handles rollback and
    cleanup on errors.
    """

    def __init__(self, connection_provider: Callable[[], AbstractContextManager[Any]]):
        self._connection_provider = connection_provider

    def enqueue(self, task: TaskCreate) -> Task:
        return self.enqueue_many([task])[0]

    def enqueue_many(self, tasks: list[TaskCreate]) -> list[Task]:
        if not tasks:
            return []

        keys = [task.idempotency_key for task in tasks]
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for task in tasks:
                    cur.execute(
                        _INSERT_TASK,
                        (
                            uuid4(),
                            task.task_type.value,
                            json.dumps(task.payload),
                            task.priority,
                            _ensure_utc(task.run_at),
                            TaskStatus.QUEUED.value,
                            task.max_attempts,
                            task.idempotency_key,
                        ),
                    )
                    if cur.rowcount == 0:
                        logger.debug(
                            "task_enqueue_deduplicated",
                            idempotency_key=task.idempotency_key,
                        )
                cur.execute(
                    "SELECT * FROM pipeline_tasks WHERE idempotency_key = ANY(%s)",
                    (keys,),
                )
                rows = cur.fetchall()
                conn.commit()

        by_key = {row["idempotency_key"]: Task.model_validate(dict(row)) for row in rows}
        return [by_key[key] for key in keys]

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        now = datetime.now(tz=UTC)
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    _LEASE_TASKS,
                    (
                        TaskStatus.QUEUED.value,
                        task_type.value,
                        now,
                        limit,
                        TaskStatus.IN_PROGRESS.value,
                        now,
                        now,
                    ),
                )
                rows = cur.fetchall()
                conn.commit()

        return [Task.model_validate(dict(row)) for row in rows]

    def complete(self, task_id: UUID) -> None:
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE pipeline_tasks
                    SET status = %s, last_error = NULL, locked_at = NULL,
                        updated_at = %s
                    WHERE task_id = %s
                    """,
                    (TaskStatus.DONE.value, datetime.now(tz=UTC), task_id),
                )
                if cur.rowcount == 0:
                    conn.rollback()
                    raise RepositoryError(f"Task not found: {task_id}")
                conn.commit()

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT attempts, max_attempts, run_at
                    FROM pipeline_tasks WHERE task_id = %s FOR UPDATE
                    """,
                    (task_id,),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise RepositoryError(f"Task not found: {task_id}")

                should_retry = retry_at is not None and int(row["attempts"]) < int(
                    row["max_attempts"]
                )
                next_run_at = (
                    _ensure_utc(retry_at)
                    if should_retry and retry_at is not None
                    else row["run_at"]
                )
                cur.execute(
                    """
                    UPDATE pipeline_tasks
                    SET status = %s, run_at = %s, last_error = %s, locked_at = NULL,
                        updated_at = %s
                    WHERE task_id = %s
                    """,
                    (
                        TaskStatus.QUEUED.value
                        if should_retry
                        else TaskStatus.FAILED.value,
                        next_run_at,
                        error,
                        datetime.now(tz=UTC),
                        task_id,
                    ),
                )
                conn.commit()


__all__ = ["PostgresTaskQueue"]
