"""Entry point for periodic storage repair and redownload of flagged media."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import get_settings
from media_ingest.observability.metrics import ensure_metrics_exporter
from media_ingest.observability.tracing import new_correlation_id
from media_ingest.use_cases.service_factories import build_services
from scripts import pipeline_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Validate stored media and redownload flagged files"
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=3600.0,
        help="Seconds between validation passes",
    )
    parser.add_argument(
        "--skip-redownload",
        action="store_true",
        help="Only validate and repair, do not fetch flagged files",
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
        logger.error("storage_validation_misconfigured", error=str(exc))
        return 1

    def _validate() -> None:
        correlation_id = new_correlation_id()
        report = services.maintenance.repair(
            limit=settings.validation_batch_size, correlation_id=correlation_id
        )
        redownloaded = 0
        if not args.skip_redownload:
            redownloaded = sum(
                1
                for result in services.maintenance.redownload_flagged(
                    limit=settings.validation_batch_size,
                    correlation_id=correlation_id,
                )
                if result.success
            )
        logger.info(
            "storage_validation_pass_completed",
            processed=report.processed,
            repaired=report.repaired,
            invalid=report.invalid,
            redownloaded=redownloaded,
            correlation_id=correlation_id,
        )

    pipeline_runtime.run_scheduler_loop(
        controller=controller,
        interval_seconds=args.interval_seconds,
        run_once=args.run_once,
        action=_validate,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
