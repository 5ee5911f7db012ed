from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

import pytest
from pytest_mock import MockerFixture

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.domain.exceptions import DataIntegrityError
from media_ingest.domain.models import Message, ProcessingState
from media_ingest.ports.workflows import CaptionWorkflowPort, GroupSyncPort
from media_ingest.services.caption_parser import parse_caption
from media_ingest.use_cases.caption_workflow import (
    REPROCESS_HISTORY_REASON,
    CaptionWorkflow,
)
from media_ingest.use_cases.service_factories import IngestServices


def _get(repo: SQLiteRepository, message_id: UUID) -> Message:
    message = repo.get_message(message_id)
    assert message is not None
    return message


def test_captioned_message_is_completed(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(caption="Widget #AB12521x3 (blue)")

    result = services.caption_workflow.run(message.id, "cid-1")

    assert result.claimed is True
    assert result.processing_state == ProcessingState.COMPLETED
    stored = _get(repo, message.id)
    assert stored.processing_state == ProcessingState.COMPLETED
    assert stored.analyzed_content is not None
    assert stored.analyzed_content.product_code == "AB12521"
    assert stored.correlation_id == "cid-1"
    assert stored.is_original_caption is False


def test_incomplete_caption_is_partial_success(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(caption="Widget x3")

    result = services.caption_workflow.run(message.id)

    assert result.processing_state == ProcessingState.PARTIAL_SUCCESS
    assert _get(repo, message.id).processing_state == ProcessingState.PARTIAL_SUCCESS


def test_completion_propagates_to_group(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    sibling = make_message(media_group_id="g1", processing_state=ProcessingState.PENDING)
    source = make_message(caption="Widget #AB12521x3", media_group_id="g1", offset=1)

    result = services.caption_workflow.run(source.id)

    assert result.group_sync is not None
    assert result.group_sync.updated_count == 1
    stored_source = _get(repo, source.id)
    assert stored_source.is_original_caption is True
    assert stored_source.message_caption_id == source.id
    synced = _get(repo, sibling.id)
    assert synced.processing_state == ProcessingState.COMPLETED
    assert synced.message_caption_id == source.id


def test_message_already_processing_is_not_claimed(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(caption="Widget", processing_state=ProcessingState.PROCESSING)

    result = services.caption_workflow.run(message.id)

    assert result.claimed is False
    assert result.detail == "not_claimed"
    assert result.processing_state == ProcessingState.PROCESSING
    assert _get(repo, message.id).analyzed_content is None


def test_captionless_message_outside_group_is_left_alone(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message()

    result = services.caption_workflow.run(message.id)

    assert result.detail == "no_caption"
    assert _get(repo, message.id).processing_state == ProcessingState.INITIALIZED


def test_captionless_group_member_waits_for_recheck(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(media_group_id="g2")

    result = services.caption_workflow.run(message.id)

    assert result.detail == "recheck_scheduled"
    assert result.processing_state == ProcessingState.PENDING


def test_deleted_message_is_skipped(
    services: IngestServices, make_message: Callable[..., Message]
) -> None:
    message = make_message(caption="Widget", processing_state=ProcessingState.DELETED)

    result = services.caption_workflow.run(message.id)

    assert result.detail == "deleted"
    assert result.claimed is False


def test_unknown_message_raises(services: IngestServices) -> None:
    with pytest.raises(DataIntegrityError):
        services.caption_workflow.run(UUID(int=7))


def test_analysis_failure_moves_message_to_error(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
    mocker: MockerFixture,
    clock: Callable[[], datetime],
) -> None:
    analyzer = mocker.Mock()
    analyzer.analyze.side_effect = RuntimeError("parser crashed")
    workflow = CaptionWorkflow(
        repo, services.state_machine, analyzer, services.group_sync, clock=clock
    )
    message = make_message(caption="Widget")

    with pytest.raises(RuntimeError, match="parser crashed"):
        workflow.run(message.id, "cid-err")

    stored = _get(repo, message.id)
    assert stored.processing_state == ProcessingState.ERROR
    assert stored.error_message == "parser crashed"
    assert stored.last_error_at == clock()
    events = repo.list_audit_events(event_type="caption_workflow_failed")
    assert [event.entity_id for event in events] == [str(message.id)]
    assert events[0].metadata == {"error_type": "RuntimeError"}


def test_forced_rerun_archives_changed_content(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
    clock: Callable[[], datetime],
) -> None:
    previous = parse_caption("Widget #AB12521x1", now=clock(), today=clock().date())
    message = make_message(
        caption="Widget #AB12521x3 (blue)",
        analyzed_content=previous,
        processing_state=ProcessingState.COMPLETED,
    )

    result = services.caption_workflow.run(message.id, force=True)

    assert result.claimed is True
    stored = _get(repo, message.id)
    assert stored.analyzed_content is not None
    assert stored.analyzed_content.quantity == 3
    assert len(stored.old_analyzed_content) == 1
    assert stored.old_analyzed_content[0].reason == REPROCESS_HISTORY_REASON
    assert stored.old_analyzed_content[0].content["quantity"] == 1


def test_forced_rerun_with_same_content_keeps_history_empty(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(
        caption="Widget #AB12521x3",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
    )

    services.caption_workflow.run(message.id, force=True)

    assert _get(repo, message.id).old_analyzed_content == []


def test_wired_services_satisfy_workflow_ports(services: IngestServices) -> None:
    assert isinstance(services.caption_workflow, CaptionWorkflowPort)
    assert isinstance(services.group_sync, GroupSyncPort)
