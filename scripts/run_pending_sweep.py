"""Entry point for the pending-work sweep (stalled recovery, captions, groups)."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import get_settings
from media_ingest.observability.metrics import ensure_metrics_exporter
from media_ingest.observability.tracing import new_correlation_id
from media_ingest.use_cases.pending_sweep import run_pending_sweep
from media_ingest.use_cases.service_factories import build_services
from scripts import pipeline_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the pending-work sweep")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=60.0,
        help="Seconds between sweep passes",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override processing.pending_batch_size",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single pass and exit",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    pipeline_runtime.initialize_logging(settings, json_logs=args.json_logs)
    ensure_metrics_exporter()

    controller = pipeline_runtime.shutdown_on_signals()

    try:
        services = build_services(settings)
    except ValueError as exc:
        logger.error("pending_sweep_misconfigured", error=str(exc))
        return 1

    batch_size = args.batch_size or settings.pending_batch_size

    def _sweep() -> None:
        run_pending_sweep(
            repository=services.repository,
            state_machine=services.state_machine,
            caption_workflow=services.caption_workflow,
            group_sync=services.group_sync,
            batch_size=batch_size,
            group_batch_size=settings.inconsistent_group_batch_size,
            correlation_id=new_correlation_id(),
        )

    pipeline_runtime.run_scheduler_loop(
        controller=controller,
        interval_seconds=args.interval_seconds,
        run_once=args.run_once,
        action=_sweep,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
