"""Entry point for the media group recheck worker."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import get_settings
from media_ingest.observability.metrics import ensure_metrics_exporter
from media_ingest.use_cases.service_factories import build_services
from media_ingest.workers import MediaGroupRecheckWorker
from scripts import pipeline_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the media group recheck worker")
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=5.0,
        help="Seconds to wait between lease attempts when the queue is idle",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=8,
        help="Tasks leased per iteration",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Process one batch and exit",
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
        logger.error("recheck_worker_misconfigured", error=str(exc))
        return 1

    worker = MediaGroupRecheckWorker(
        task_queue=services.repository.task_queue(),
        handle_recheck=services.group_sync.handle_recheck,
        batch_size=args.batch_size,
    )

    pipeline_runtime.run_worker_loop(
        worker,
        controller,
        poll_interval=args.poll_interval_seconds,
        run_once=args.run_once,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
