from __future__ import annotations

from collections.abc import Callable
from uuid import UUID

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.domain.models import Message
from media_ingest.domain.processing_constants import MISSING_OBJECT_REASON
from media_ingest.use_cases.service_factories import IngestServices
from tests.conftest import STORAGE_BASE_URL, FakeBot, InMemoryObjectStore


def _get(repo: SQLiteRepository, message_id: UUID) -> Message:
    message = repo.get_message(message_id)
    assert message is not None
    return message


def _stored_message(
    make_message: Callable[..., Message],
    store: InMemoryObjectStore,
    path: str,
    **overrides: object,
) -> Message:
    store.objects[path] = (b"bytes", "image/jpeg")
    return make_message(
        storage_path=path, public_url=f"{STORAGE_BASE_URL}/{path}", **overrides
    )


def test_validate_reports_present_objects(
    services: IngestServices,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    message = _stored_message(make_message, store, "uniq101.jpg")

    report = services.maintenance.validate([message.id])

    assert report.processed == 1
    assert report.valid == 1
    assert report.details[0].status == "valid"


def test_validate_flags_missing_object(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(storage_path="gone.jpg")

    report = services.maintenance.validate([message.id], correlation_id="cid-v")

    assert report.invalid == 1
    assert report.details[0].status == "flagged"
    assert report.details[0].reason == MISSING_OBJECT_REASON
    stored = _get(repo, message.id)
    assert stored.needs_redownload is True
    assert stored.redownload_reason == MISSING_OBJECT_REASON


def test_validate_does_not_flag_when_store_is_unreachable(
    services: IngestServices,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    message = _stored_message(make_message, store, "uniq101.jpg")
    store.unreachable = True

    report = services.maintenance.validate([message.id])

    assert report.details[0].status == "error"
    assert _get(repo, message.id).needs_redownload is False


def test_validate_pages_through_messages(
    services: IngestServices,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    for offset in range(3):
        _stored_message(make_message, store, f"uniq{101 + offset}.jpg", offset=offset)

    first_page = services.maintenance.validate(limit=2)
    second_page = services.maintenance.validate(limit=2, offset=2)

    assert first_page.processed == 2
    assert second_page.processed == 1


def test_standardize_copies_object_to_content_key(
    services: IngestServices,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    message = _stored_message(
        make_message, store, "photos/legacy.jpg", file_unique_id="AgADx1"
    )

    report = services.maintenance.standardize_paths([message.id])

    assert report.repaired == 1
    assert store.objects["AgADx1.jpg"] == (b"bytes", "image/jpeg")
    stored = _get(repo, message.id)
    assert stored.storage_path == "AgADx1.jpg"
    assert stored.public_url == f"{STORAGE_BASE_URL}/AgADx1.jpg"


def test_standardize_leaves_standard_paths_alone(
    services: IngestServices,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    message = _stored_message(make_message, store, "AgADx1.jpg", file_unique_id="AgADx1")

    report = services.maintenance.standardize_paths([message.id])

    assert report.valid == 1
    assert store.uploads == []


def test_standardize_reports_missing_source_object(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(storage_path="photos/lost.jpg", file_unique_id="AgADx1")

    report = services.maintenance.standardize_paths([message.id])

    assert report.details[0].status == "error"
    assert _get(repo, message.id).storage_path == "photos/lost.jpg"


def test_fix_urls_rewrites_stale_url(
    services: IngestServices,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    message = _stored_message(make_message, store, "uniq101.jpg")
    repo.update_message(message.id, {"public_url": "http://old-host/uniq101.jpg"})

    report = services.maintenance.fix_urls([message.id])

    assert report.repaired == 1
    assert _get(repo, message.id).public_url == f"{STORAGE_BASE_URL}/uniq101.jpg"


def test_repair_marks_rows_changed_by_earlier_steps(
    services: IngestServices,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    legacy = _stored_message(
        make_message, store, "photos/legacy.jpg", file_unique_id="AgADx1"
    )
    healthy = _stored_message(
        make_message, store, "AgADx2.jpg", file_unique_id="AgADx2", offset=1
    )
    missing = make_message(storage_path="AgADx3.jpg", file_unique_id="AgADx3", offset=2)

    report = services.maintenance.repair(correlation_id="cid-r")

    statuses = {detail.message_id: detail.status for detail in report.details}
    assert statuses == {
        legacy.id: "repaired",
        healthy.id: "valid",
        missing.id: "flagged",
    }
    assert (report.processed, report.valid, report.repaired, report.invalid) == (
        3,
        1,
        1,
        1,
    )


def test_redownload_restores_flagged_media(
    services: IngestServices,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    bot: FakeBot,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(
        storage_path="uniq101.jpg",
        needs_redownload=True,
        redownload_reason=MISSING_OBJECT_REASON,
    )
    bot.add_file(message.file_id, "photos/file_101.jpg", b"fresh")

    result = services.maintenance.redownload(message.id, correlation_id="cid-d")

    assert result.success is True
    assert result.attempts == 1
    assert result.file_id_used == message.file_id
    assert store.objects[message.file_unique_id + ".jpg"][0] == b"fresh"
    stored = _get(repo, message.id)
    assert stored.needs_redownload is False
    assert stored.redownload_reason is None
    assert stored.redownload_attempts == 1
    [event] = repo.list_audit_events(event_type="file_redownloaded")
    assert event.metadata["from_sibling"] is False
    assert event.correlation_id == "cid-d"


def test_failed_redownload_counts_attempt_and_stays_flagged(
    services: IngestServices,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(needs_redownload=True, redownload_reason="missing")

    result = services.maintenance.redownload(message.id)

    assert result.success is False
    assert result.attempts == 1
    stored = _get(repo, message.id)
    assert stored.needs_redownload is True
    assert stored.redownload_attempts == 1


def test_redownload_cap_is_enforced(
    services: IngestServices,
    bot: FakeBot,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(needs_redownload=True, redownload_attempts=5)
    bot.add_file(message.file_id, "photos/file.jpg")

    result = services.maintenance.redownload(message.id)

    assert result.success is False
    assert result.reason == "redownload attempt cap reached"
    assert bot.get_file_calls == []


def test_redownload_flagged_skips_exhausted_messages(
    services: IngestServices,
    bot: FakeBot,
    make_message: Callable[..., Message],
) -> None:
    retry = make_message(needs_redownload=True, redownload_attempts=1)
    make_message(needs_redownload=True, redownload_attempts=5, offset=1)
    make_message(offset=2)
    bot.add_file(retry.file_id, "photos/retry.jpg")

    results = services.maintenance.redownload_flagged(limit=10)

    assert [(r.message_id, r.success, r.attempts) for r in results] == [
        (retry.id, True, 2)
    ]
