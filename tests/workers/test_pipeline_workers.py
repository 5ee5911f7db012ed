from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from pytest_mock import MockerFixture

from media_ingest.domain.models import GroupSyncResult
from media_ingest.domain.task_queue import Task, TaskStatus, TaskType
from media_ingest.workers.pipeline import MediaGroupRecheckWorker


def _task(
    attempts: int = 1,
    payload: dict[str, object] | None = None,
    max_attempts: int = 5,
) -> Task:
    now = datetime.now(tz=UTC)
    return Task(
        task_id=uuid4(),
        task_type=TaskType.MEDIA_GROUP_RECHECK,
        payload={"media_group_id": "album-1"} if payload is None else payload,
        priority=50,
        run_at=now,
        status=TaskStatus.IN_PROGRESS,
        attempts=attempts,
        max_attempts=max_attempts,
        idempotency_key=f"media_group_recheck:{uuid4()}",
        last_error=None,
        created_at=now,
        updated_at=now,
        locked_at=now,
    )


def test_recheck_worker_runs_handler_and_completes(mocker: MockerFixture) -> None:
    queue = mocker.Mock()
    task = _task()
    queue.lease.return_value = [task]
    handler = mocker.Mock(
        return_value=GroupSyncResult(media_group_id="album-1", updated_count=2)
    )

    worker = MediaGroupRecheckWorker(
        task_queue=queue, handle_recheck=handler, jitter_provider=lambda base: 0.0
    )

    assert worker.process_available_tasks() == 1
    queue.lease.assert_called_once_with(TaskType.MEDIA_GROUP_RECHECK, 8)
    handler.assert_called_once_with("album-1", correlation_id=str(task.task_id))
    queue.complete.assert_called_once_with(task.task_id)
    queue.fail.assert_not_called()


def test_recheck_worker_retries_on_error(mocker: MockerFixture) -> None:
    queue = mocker.Mock()
    task = _task(attempts=2)
    queue.lease.return_value = [task]
    handler = mocker.Mock(side_effect=RuntimeError("boom"))

    worker = MediaGroupRecheckWorker(
        task_queue=queue, handle_recheck=handler, jitter_provider=lambda base: 0.0
    )
    before = datetime.now(tz=UTC)
    worker.process_available_tasks()

    queue.complete.assert_not_called()
    args, kwargs = queue.fail.call_args
    assert args[0] == task.task_id
    assert "boom" in kwargs["error"]
    assert kwargs["retry_at"] >= before + timedelta(seconds=2)


def test_recheck_worker_gives_up_after_max_attempts(mocker: MockerFixture) -> None:
    queue = mocker.Mock()
    queue.lease.return_value = [_task(attempts=5, max_attempts=5)]
    handler = mocker.Mock(side_effect=RuntimeError("boom"))

    MediaGroupRecheckWorker(task_queue=queue, handle_recheck=handler).process_available_tasks()

    assert queue.fail.call_args.kwargs["retry_at"] is None


def test_recheck_worker_rejects_payload_without_group(mocker: MockerFixture) -> None:
    queue = mocker.Mock()
    queue.lease.return_value = [_task(payload={})]
    handler = mocker.Mock()

    MediaGroupRecheckWorker(task_queue=queue, handle_recheck=handler).process_available_tasks()

    handler.assert_not_called()
    assert "media_group_id" in queue.fail.call_args.kwargs["error"]


def test_recheck_worker_processes_whole_batch(mocker: MockerFixture) -> None:
    queue = mocker.Mock()
    tasks = [_task(), _task(payload={"media_group_id": "album-2"})]
    queue.lease.return_value = tasks
    handler = mocker.Mock(
        side_effect=[
            RuntimeError("first fails"),
            GroupSyncResult(media_group_id="album-2"),
        ]
    )

    worker = MediaGroupRecheckWorker(
        task_queue=queue, handle_recheck=handler, batch_size=2
    )

    assert worker.process_available_tasks() == 2
    queue.fail.assert_called_once()
    queue.complete.assert_called_once_with(tasks[1].task_id)


def test_batch_size_must_be_positive(mocker: MockerFixture) -> None:
    with pytest.raises(ValueError):
        MediaGroupRecheckWorker(
            task_queue=mocker.Mock(), handle_recheck=mocker.Mock(), batch_size=0
        )
