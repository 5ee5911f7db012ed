"""Durable queue used for delayed media-group rechecks."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from media_ingest.domain.task_queue import Task, TaskCreate, TaskType


@runtime_checkable
class TaskQueuePort(Protocol):
    """What the recheck scheduler and worker need from a queue backend."""

    def enqueue(self, task: TaskCreate) -> Task:
        """Store ``task``; a repeated idempotency key returns the task already queued."""

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        """Hand out up to ``limit`` tasks whose ``run_at`` has passed."""

    def complete(self, task_id: UUID) -> None: ...

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        """Keep ``error``; requeue at ``retry_at`` or give up when it is None."""


__all__ = ["TaskQueuePort"]
