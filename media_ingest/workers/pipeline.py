"""Workers backed by the durable task queue."""

from __future__ import annotations

import math
import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Final, Protocol

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.models import GroupSyncResult
from media_ingest.domain.task_queue import Task, TaskType
from media_ingest.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)


class RecheckHandler(Protocol):
    """Callable running the delayed recheck of one media group."""

    def __call__(
        self, media_group_id: str, *, correlation_id: str | None = None
    ) -> GroupSyncResult: ...


_DEFAULT_RETRY_MAX_SECONDS: Final[float] = 300.0
_DEFAULT_BATCH_SIZE: Final[int] = 8


class _BaseWorker:
    """Common worker functionality (leasing, retries, logging)."""

    def __init__(
        self,
        *,
        task_queue: TaskQueuePort,
        task_type: TaskType,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        jitter_provider: Callable[[float], float] | None = None,
    ) -> None:
        if batch_size <= 0:
            msg = "batch_size must be positive"
            raise ValueError(msg)

        self._task_queue = task_queue
        self._task_type = task_type
        self._batch_size = batch_size
        self._jitter_provider = jitter_provider or _default_jitter

    def process_available_tasks(self) -> int:
        """Lease due tasks and run them; returns how many were leased."""

        tasks = self._task_queue.lease(self._task_type, self._batch_size)
        for task in tasks:
            try:
                logger.info(
                    "worker_task_started",
                    task_type=self._task_type.value,
                    task_id=str(task.task_id),
                    attempts=task.attempts,
                )
                self._handle_task(task)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "worker_task_failed",
                    task_type=self._task_type.value,
                    task_id=str(task.task_id),
                )
                self._task_queue.fail(
                    task.task_id,
                    error=f"{type(exc).__name__}: {exc}",
                    retry_at=self._compute_retry_at(task),
                )
            else:
                self._task_queue.complete(task.task_id)
                logger.info(
                    "worker_task_completed",
                    task_type=self._task_type.value,
                    task_id=str(task.task_id),
                )
        return len(tasks)

    def _compute_retry_at(self, task: Task) -> datetime | None:
        if task.attempts >= task.max_attempts:
            return None

        base_delay = min(
            _DEFAULT_RETRY_MAX_SECONDS, math.pow(2.0, max(task.attempts - 1, 0))
        )
        jitter = max(0.0, self._jitter_provider(base_delay))
        delay = max(1.0, base_delay + jitter)
        return datetime.now(tz=UTC) + timedelta(seconds=delay)

    def _handle_task(self, task: Task) -> None:
        raise NotImplementedError


def _default_jitter(base: float) -> float:
    return random.uniform(0.0, base * 0.25)


class MediaGroupRecheckWorker(_BaseWorker):
    """Runs delayed rechecks for albums whose caption had not arrived yet."""

    def __init__(
        self,
        *,
        task_queue: TaskQueuePort,
        handle_recheck: RecheckHandler,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        jitter_provider: Callable[[float], float] | None = None,
    ) -> None:
        super().__init__(
            task_queue=task_queue,
            task_type=TaskType.MEDIA_GROUP_RECHECK,
            batch_size=batch_size,
            jitter_provider=jitter_provider,
        )
        self._handle_recheck = handle_recheck

    def _handle_task(self, task: Task) -> None:
        media_group_id = (task.payload or {}).get("media_group_id")
        if not isinstance(media_group_id, str) or not media_group_id:
            msg = "recheck task missing media_group_id"
            raise ValueError(msg)

        result = self._handle_recheck(media_group_id, correlation_id=str(task.task_id))
        logger.info(
            "media_group_recheck_summary",
            media_group_id=media_group_id,
            reason=result.reason,
            updated=result.updated_count,
            failed=result.failed_count,
        )


__all__ = ["MediaGroupRecheckWorker"]
