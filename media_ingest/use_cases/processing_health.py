"""Processing health report."""

from collections.abc import Callable
from datetime import datetime, timedelta

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.models import AuditEvent, ProcessingHealth, utc_now
from media_ingest.domain.processing_constants import (
    INCONSISTENT_GROUP_BATCH_SIZE,
    STALE_PROCESSING_TIMEOUT,
)
from media_ingest.domain.protocols import MessageRepository

logger = get_logger(__name__)


def build_health_report(
    repository: MessageRepository,
    *,
    stale_after: timedelta = STALE_PROCESSING_TIMEOUT,
    clock: Callable[[], datetime] = utc_now,
    correlation_id: str | None = None,
) -> ProcessingHealth:
    """Count messages per state plus the ones that need attention.

    ``groups_awaiting_sync`` is capped at one sweep batch.
    """
    now = clock()
    report = ProcessingHealth(
        states=repository.count_by_state(),
        needs_redownload=repository.count_needs_redownload(),
        stalled_processing=repository.count_stalled(now - stale_after),
        groups_awaiting_sync=len(
            repository.list_groups_needing_sync(INCONSISTENT_GROUP_BATCH_SIZE)
        ),
        generated_at=now,
    )
    repository.record_event(
        AuditEvent(
            event_type="processing_health_checked",
            correlation_id=correlation_id,
            metadata=report.model_dump(mode="json"),
        )
    )
    logger.info(
        "processing_health_checked",
        states=report.states,
        needs_redownload=report.needs_redownload,
        stalled=report.stalled_processing,
        groups_awaiting_sync=report.groups_awaiting_sync,
    )
    return report


__all__ = ["build_health_report"]
