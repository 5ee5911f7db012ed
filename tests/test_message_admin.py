from __future__ import annotations

from collections.abc import Callable
from uuid import UUID

import pytest

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.domain.exceptions import DataIntegrityError, ValidationError
from media_ingest.domain.models import Message, ProcessingState
from media_ingest.use_cases.service_factories import IngestServices
from tests.conftest import FakeBot, InMemoryObjectStore


def _get(repo: SQLiteRepository, message_id: UUID) -> Message:
    message = repo.get_message(message_id)
    assert message is not None
    return message


def test_edit_caption_updates_telegram_and_reanalyzes(
    services: IngestServices,
    repo: SQLiteRepository,
    bot: FakeBot,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(
        caption="Widget #AB12521x1",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
    )

    result = services.admin.edit_caption(message.id, "Widget #AB12521x4", correlation_id="c")

    assert result is not None
    assert result.processing_state == ProcessingState.COMPLETED
    assert bot.edited_captions == [(-1001, message.platform_message_id, "Widget #AB12521x4")]
    stored = _get(repo, message.id)
    assert stored.caption == "Widget #AB12521x4"
    assert stored.edit_count == 1
    assert stored.analyzed_content is not None
    assert stored.analyzed_content.quantity == 4
    assert [snapshot.reason for snapshot in stored.old_analyzed_content] == ["edit"]


def test_edit_caption_propagates_to_group(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    source = make_message(
        caption="Widget #AB12521x1",
        media_group_id="g1",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
    )
    sibling = make_message(media_group_id="g1", offset=1)
    services.group_sync.sync("g1")

    services.admin.edit_caption(source.id, "Widget #AB12521x9")

    synced = _get(repo, sibling.id)
    assert synced.analyzed_content is not None
    assert synced.analyzed_content.quantity == 9


def test_unchanged_caption_is_a_no_op(
    services: IngestServices, bot: FakeBot, make_message: Callable[..., Message]
) -> None:
    message = make_message(caption="Widget")

    assert services.admin.edit_caption(message.id, "Widget") is None
    assert bot.edited_captions == []


def test_empty_caption_is_rejected(
    services: IngestServices, make_message: Callable[..., Message]
) -> None:
    message = make_message(caption="Widget")

    with pytest.raises(ValidationError):
        services.admin.edit_caption(message.id, "   ")


def test_soft_delete_keeps_row(
    services: IngestServices,
    repo: SQLiteRepository,
    bot: FakeBot,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(caption="Widget", processing_state=ProcessingState.COMPLETED)

    deleted = services.admin.delete_message(message.id, delete_from_telegram=True)

    assert deleted is True
    assert bot.deleted_messages == [(-1001, message.platform_message_id)]
    stored = _get(repo, message.id)
    assert stored.processing_state == ProcessingState.DELETED
    assert stored.deleted_from_telegram is True


def test_hard_delete_removes_unshared_object(
    services: IngestServices,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    store.objects["solo.jpg"] = (b"x", "image/jpeg")
    message = make_message(storage_path="solo.jpg", file_unique_id="solo")

    assert services.admin.hard_delete(message.id) is True

    assert repo.get_message(message.id) is None
    assert store.deleted == ["solo.jpg"]
    [event] = repo.list_audit_events(event_type="message_hard_deleted")
    assert event.metadata["object_removed"] is True


def test_hard_delete_keeps_shared_object(
    services: IngestServices,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    store.objects["shared.jpg"] = (b"x", "image/jpeg")
    first = make_message(storage_path="shared.jpg", file_unique_id="shared")
    make_message(storage_path="shared.jpg", file_unique_id="shared", offset=1)

    services.admin.hard_delete(first.id)

    assert store.deleted == []
    assert "shared.jpg" in store.objects


def test_force_reprocess_reruns_errored_message(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(
        caption="Widget #AB12521x3",
        processing_state=ProcessingState.ERROR,
        error_message="boom",
    )

    result = services.admin.force_reprocess(message.id)

    assert result.claimed is True
    stored = _get(repo, message.id)
    assert stored.processing_state == ProcessingState.COMPLETED
    assert stored.error_message is None


def test_unknown_message_raises(services: IngestServices) -> None:
    with pytest.raises(DataIntegrityError):
        services.admin.force_reprocess(UUID(int=1))
