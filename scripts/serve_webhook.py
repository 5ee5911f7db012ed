"""Serve the Telegram webhook and maintenance operations over HTTP."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_ingest.api.app import create_app
from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import get_settings
from media_ingest.use_cases.service_factories import build_services
from scripts import pipeline_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the Telegram webhook")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8080, help="Bind port")
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

    try:
        services = build_services(settings)
    except ValueError as exc:
        logger.error("webhook_server_misconfigured", error=str(exc))
        return 1

    logger.info("webhook_server_starting", host=args.host, port=args.port)
    uvicorn.run(create_app(services), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
