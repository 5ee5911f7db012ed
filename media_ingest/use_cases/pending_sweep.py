"""Pending-work sweep.

One stateless pass, meant to run on a short interval:

1. recover stalled ``processing`` rows
2. run the caption workflow for pending messages
3. sync media groups left inconsistent
"""

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import MediaIngestError
from media_ingest.domain.models import PendingSweepResult, ProcessingState
from media_ingest.domain.processing_constants import INCONSISTENT_GROUP_BATCH_SIZE
from media_ingest.domain.protocols import MessageRepository
from media_ingest.ports.workflows import CaptionWorkflowPort
from media_ingest.use_cases.media_group_sync import MediaGroupSynchronizer
from media_ingest.use_cases.processing_state import ProcessingStateMachine

logger = get_logger(__name__)


def run_pending_sweep(
    *,
    repository: MessageRepository,
    state_machine: ProcessingStateMachine,
    caption_workflow: CaptionWorkflowPort,
    group_sync: MediaGroupSynchronizer,
    batch_size: int = 50,
    group_batch_size: int = INCONSISTENT_GROUP_BATCH_SIZE,
    correlation_id: str | None = None,
) -> PendingSweepResult:
    """Process one batch of pending work.

    Args:
        repository: Message repository
        state_machine: Used for stalled recovery
        caption_workflow: Runs each pending message
        group_sync: Repairs inconsistent groups
        batch_size: Max pending messages per pass
        group_batch_size: Max groups synced per pass
        correlation_id: Threaded into logs and audit records

    Returns:
        Counters for the pass
    """
    result = PendingSweepResult(
        stalled=state_machine.sweep_stalled(limit=batch_size, correlation_id=correlation_id)
    )

    for message in repository.list_by_state(ProcessingState.PENDING, batch_size):
        result.processed += 1
        try:
            outcome = caption_workflow.run(message.id, correlation_id)
        except MediaIngestError as e:
            result.failed += 1
            logger.warning(
                "pending_message_failed", message_id=str(message.id), error=str(e)
            )
            continue
        except Exception:  # noqa: BLE001
            result.failed += 1
            logger.exception("pending_message_crashed", message_id=str(message.id))
            continue

        if outcome.detail == "recheck_scheduled":
            result.recheck_tasks += 1
        if outcome.claimed and outcome.processing_state in (
            ProcessingState.COMPLETED,
            ProcessingState.PARTIAL_SUCCESS,
        ):
            result.completed += 1
        elif not outcome.claimed:
            result.skipped += 1

    for group_result in group_sync.sync_inconsistent_groups(
        group_batch_size, correlation_id=correlation_id
    ):
        if group_result.source_message_id is not None:
            result.groups_synced += 1

    logger.info(
        "pending_sweep_completed",
        processed=result.processed,
        completed=result.completed,
        failed=result.failed,
        skipped=result.skipped,
        stalled_reset=len(result.stalled.reset_to_pending),
        stalled_errored=len(result.stalled.moved_to_error),
        groups_synced=result.groups_synced,
    )
    return result


__all__ = ["run_pending_sweep"]
