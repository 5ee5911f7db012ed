"""Prometheus metrics for ingestion, sync and storage maintenance."""

from __future__ import annotations

import os
import signal
import threading
from types import FrameType
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from media_ingest.config.logging_config import get_logger

logger = get_logger(__name__)

WEBHOOK_UPDATES_TOTAL: Final[Counter] = Counter(
    "media_ingest_webhook_updates_total",
    "Telegram updates received by the webhook",
    labelnames=("update_type", "outcome"),
)

CAPTION_PARSES_TOTAL: Final[Counter] = Counter(
    "media_ingest_caption_parses_total",
    "Caption parses by method",
    labelnames=("method",),
)

GROUP_SYNC_MESSAGES_TOTAL: Final[Counter] = Counter(
    "media_ingest_group_sync_messages_total",
    "Sibling outcomes of media group synchronization",
    labelnames=("outcome",),
)

MEDIA_ACQUISITIONS_TOTAL: Final[Counter] = Counter(
    "media_ingest_media_acquisitions_total",
    "Media acquisition attempts by outcome",
    labelnames=("outcome",),
)

CLAIM_CONFLICTS_TOTAL: Final[Counter] = Counter(
    "media_ingest_claim_conflicts_total",
    "Claims that found the message already taken",
)

STALLED_MESSAGES_TOTAL: Final[Counter] = Counter(
    "media_ingest_stalled_messages_total",
    "Stalled processing rows handled by the sweep",
    labelnames=("action",),
)

OPERATION_DURATION_SECONDS: Final[Histogram] = Histogram(
    "media_ingest_operation_duration_seconds",
    "Duration of maintenance operations in seconds",
    labelnames=("operation",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_EXPORTER_STOP_EVENT = threading.Event()
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"
METRICS_EXPORTER_AUTO_START_ENV: Final[str] = "METRICS_EXPORTER_AUTO_START"


def _should_autostart() -> bool:
    raw_value = os.getenv(METRICS_EXPORTER_AUTO_START_ENV, "0")
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter() -> None:
    """Start the Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        port = _resolve_metrics_port()
        try:
            start_http_server(port)
        except OSError as exc:
            logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


def _handle_shutdown_signal(signum: int, frame: FrameType | None) -> None:
    logger.info("metrics_exporter_shutdown_signal", signal=signum)
    _EXPORTER_STOP_EVENT.set()


def run_metrics_exporter_forever() -> None:
    """Start the exporter and block until SIGTERM/SIGINT."""

    ensure_metrics_exporter()
    for watched_signal in (signal.SIGTERM, signal.SIGINT):
        signal.signal(watched_signal, _handle_shutdown_signal)

    _EXPORTER_STOP_EVENT.wait()
    logger.info("metrics_exporter_stopped")


__all__ = [
    "CAPTION_PARSES_TOTAL",
    "CLAIM_CONFLICTS_TOTAL",
    "GROUP_SYNC_MESSAGES_TOTAL",
    "MEDIA_ACQUISITIONS_TOTAL",
    "OPERATION_DURATION_SECONDS",
    "STALLED_MESSAGES_TOTAL",
    "WEBHOOK_UPDATES_TOTAL",
    "ensure_metrics_exporter",
    "run_metrics_exporter_forever",
]


if _should_autostart():
    ensure_metrics_exporter()


if __name__ == "__main__":
    run_metrics_exporter_forever()
