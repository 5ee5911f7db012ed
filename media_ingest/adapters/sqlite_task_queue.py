"""SQLite implementation of the task queue port.

Leases take the database write lock up front (``BEGIN IMMEDIATE``) so two
workers can never lease the same row.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from media_ingest.adapters.message_rows import iso_timestamp
from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import RepositoryError
from media_ingest.domain.models import utc_now
from media_ingest.domain.task_queue import Task, TaskCreate, TaskStatus, TaskType
from media_ingest.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _row_to_task(row: sqlite3.Row) -> Task:
    data = dict(row)
    data["payload"] = json.loads(data["payload"] or "{}")
    return Task.model_validate(data)


class SQLiteTaskQueue(TaskQueuePort):
    """Task queue stored in the ``pipeline_tasks`` table of a SQLite file."""

    def __init__(self, connect: Callable[[], sqlite3.Connection]) -> None:
        self._connect = connect

    def enqueue(self, task: TaskCreate) -> Task:
        return self.enqueue_many([task])[0]

    def enqueue_many(self, tasks: list[TaskCreate]) -> list[Task]:
        if not tasks:
            return []

        now = iso_timestamp(utc_now())
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for task in tasks:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO pipeline_tasks (
                        task_id, task_type, payload, priority, run_at, status,
                        attempts, max_attempts, idempotency_key, last_error,
                        locked_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, NULL, NULL, ?, ?)
                    """,
                    (
                        str(uuid4()),
                        task.task_type.value,
                        json.dumps(task.payload),
                        task.priority,
                        iso_timestamp(task.run_at),
                        TaskStatus.QUEUED.value,
                        task.max_attempts,
                        task.idempotency_key,
                        now,
                        now,
                    ),
                )
                if cursor.rowcount == 0:
                    logger.debug(
                        "task_enqueue_deduplicated",
                        idempotency_key=task.idempotency_key,
                    )

            keys = [task.idempotency_key for task in tasks]
            rows = conn.execute(
                f"""
                SELECT * FROM pipeline_tasks
                WHERE idempotency_key IN ({",".join(["?"] * len(keys))})
                """,
                keys,
            ).fetchall()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to enqueue tasks: {e}") from e
        finally:
            conn.close()

        by_key = {row["idempotency_key"]: _row_to_task(row) for row in rows}
        return [by_key[key] for key in keys]

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        now = iso_timestamp(utc_now())
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                """
                SELECT task_id FROM pipeline_tasks
                WHERE status = ? AND task_type = ? AND run_at <= ?
                ORDER BY priority ASC, run_at ASC
                LIMIT ?
                """,
                (TaskStatus.QUEUED.value, task_type.value, now, limit),
            ).fetchall()
            task_ids = [row["task_id"] for row in rows]
            if not task_ids:
                conn.commit()
                return []

            placeholders = ",".join(["?"] * len(task_ids))
            conn.execute(
                f"""
                UPDATE pipeline_tasks
                SET status = ?, attempts = attempts + 1, locked_at = ?, updated_at = ?
                WHERE task_id IN ({placeholders})
                """,
                [TaskStatus.IN_PROGRESS.value, now, now, *task_ids],
            )
            leased = conn.execute(
                f"""
                SELECT * FROM pipeline_tasks WHERE task_id IN ({placeholders})
                ORDER BY priority ASC, run_at ASC
                """,
                task_ids,
            ).fetchall()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to lease tasks: {e}") from e
        finally:
            conn.close()

        return [_row_to_task(row) for row in leased]

    def complete(self, task_id: UUID) -> None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                UPDATE pipeline_tasks
                SET status = ?, last_error = NULL, locked_at = NULL, updated_at = ?
                WHERE task_id = ?
                """,
                (TaskStatus.DONE.value, iso_timestamp(utc_now()), str(task_id)),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise RepositoryError(f"Task not found: {task_id}")
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to complete task: {e}") from e
        finally:
            conn.close()

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT attempts, max_attempts, run_at FROM pipeline_tasks WHERE task_id = ?",
                (str(task_id),),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise RepositoryError(f"Task not found: {task_id}")

            should_retry = retry_at is not None and row["attempts"] < row["max_attempts"]
            next_run_at: Any = (
                iso_timestamp(_ensure_utc(retry_at))
                if should_retry and retry_at is not None
                else row["run_at"]
            )
            conn.execute(
                """
                UPDATE pipeline_tasks
                SET status = ?, run_at = ?, last_error = ?, locked_at = NULL,
                    updated_at = ?
                WHERE task_id = ?
                """,
                (
                    TaskStatus.QUEUED.value if should_retry else TaskStatus.FAILED.value,
                    next_run_at,
                    error,
                    iso_timestamp(utc_now()),
                    str(task_id),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to record task failure: {e}") from e
        finally:
            conn.close()


__all__ = ["SQLiteTaskQueue"]
