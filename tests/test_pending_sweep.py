from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from pytest_mock import MockerFixture

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.domain.models import (
    CaptionWorkflowResult,
    Message,
    PendingSweepResult,
    ProcessingState,
)
from media_ingest.use_cases.pending_sweep import run_pending_sweep
from media_ingest.use_cases.service_factories import IngestServices


def _sweep(services: IngestServices, **kwargs: object) -> PendingSweepResult:
    return run_pending_sweep(
        repository=services.repository,
        state_machine=services.state_machine,
        caption_workflow=services.caption_workflow,
        group_sync=services.group_sync,
        **kwargs,
    )


def test_sweep_processes_pending_messages(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    pending = make_message(caption="Widget #AB12521x3", processing_state=ProcessingState.PENDING)
    make_message(caption="Idle", offset=1)

    result = _sweep(services, correlation_id="sweep-1")

    assert result.processed == 1
    assert result.completed == 1
    stored = repo.get_message(pending.id)
    assert stored is not None
    assert stored.processing_state == ProcessingState.COMPLETED


def test_sweep_recovers_stalled_then_processes_them(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
    clock: Callable[[], datetime],
) -> None:
    stalled = make_message(
        caption="Widget #AB12521x3",
        processing_state=ProcessingState.PROCESSING,
        processing_started_at=clock() - timedelta(minutes=30),
    )

    result = _sweep(services)

    assert result.stalled.reset_to_pending == [stalled.id]
    assert result.completed == 1
    stored = repo.get_message(stalled.id)
    assert stored is not None
    assert stored.processing_state == ProcessingState.COMPLETED
    assert stored.retry_count == 1


def test_unexpected_workflow_error_does_not_stop_the_batch(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
    mocker: MockerFixture,
) -> None:
    broken = make_message(caption="Widget #AB12521x1", processing_state=ProcessingState.PENDING)
    healthy = make_message(
        caption="Widget #AB12521x3", processing_state=ProcessingState.PENDING, offset=1
    )
    original_run = services.caption_workflow.run

    def run(message_id: UUID, correlation_id: str | None = None) -> CaptionWorkflowResult:
        if message_id == broken.id:
            raise RuntimeError("unexpected driver failure")
        return original_run(message_id, correlation_id)

    mocker.patch.object(services.caption_workflow, "run", side_effect=run)

    result = _sweep(services)

    assert result.processed == 2
    assert result.failed == 1
    assert result.completed == 1
    stored = repo.get_message(healthy.id)
    assert stored is not None
    assert stored.processing_state == ProcessingState.COMPLETED


def test_sweep_counts_recheck_and_group_repairs(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    make_message(media_group_id="lonely", processing_state=ProcessingState.PENDING)
    make_message(
        caption="Widget #AB12521x3",
        media_group_id="g1",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
        offset=1,
    )
    make_message(media_group_id="g1", offset=2)

    result = _sweep(services)

    assert result.recheck_tasks == 1
    assert result.skipped == 1
    assert result.groups_synced == 1


def test_sweep_with_nothing_to_do(services: IngestServices) -> None:
    result = _sweep(services, batch_size=10)

    assert (result.processed, result.completed, result.groups_synced) == (0, 0, 0)
