from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.domain.models import Message, ProcessingState
from media_ingest.use_cases.processing_health import build_health_report


def test_health_report_counts_attention_items(
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
    clock: Callable[[], datetime],
) -> None:
    make_message(caption="A", processing_state=ProcessingState.COMPLETED, analyzed=True)
    make_message(caption="B", processing_state=ProcessingState.PENDING, needs_redownload=True)
    make_message(
        caption="C",
        processing_state=ProcessingState.PROCESSING,
        processing_started_at=clock() - timedelta(hours=2),
    )
    make_message(
        caption="Widget #AB12521x3",
        media_group_id="g1",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
    )
    make_message(media_group_id="g1", offset=1)

    report = build_health_report(repo, clock=clock, correlation_id="cid-h")

    assert report.states == {
        "completed": 2,
        "pending": 1,
        "processing": 1,
        "initialized": 1,
    }
    assert report.needs_redownload == 1
    assert report.stalled_processing == 1
    assert report.groups_awaiting_sync == 1
    assert report.generated_at == clock()
    [event] = repo.list_audit_events(event_type="processing_health_checked")
    assert event.correlation_id == "cid-h"
    assert event.metadata["needs_redownload"] == 1


def test_health_report_on_empty_database(
    repo: SQLiteRepository, clock: Callable[[], datetime]
) -> None:
    report = build_health_report(repo, clock=clock)

    assert report.states == {}
    assert report.stalled_processing == 0
