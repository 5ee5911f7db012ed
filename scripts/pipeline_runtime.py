"""Shared plumbing for the sweep, recheck worker and webhook scripts."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from types import FrameType

from media_ingest.config.logging_config import get_logger, setup_logging
from media_ingest.config.settings import Settings
from media_ingest.workers.pipeline import MediaGroupRecheckWorker

logger = get_logger(__name__)

MIN_LOOP_INTERVAL_SECONDS = 0.1


class ShutdownController:
    """Flag flipped by SIGTERM/SIGINT; loops check it between passes."""

    def __init__(self) -> None:
        self._stopped = threading.Event()

    def is_set(self) -> bool:
        return self._stopped.is_set()

    def wait(self, timeout: float) -> bool:
        return self._stopped.wait(timeout)

    def _on_signal(self, signum: int, _frame: FrameType | None) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self._stopped.set()


def shutdown_on_signals() -> ShutdownController:
    controller = ShutdownController()
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, controller._on_signal)
    return controller


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    use_json = json_logs or settings.json_logs
    setup_logging(log_level=settings.log_level, json_logs=use_json)
    logger.info("logging_initialized", level=settings.log_level, json_logs=use_json)


def _run_loop(
    loop: str,
    step: Callable[[], int],
    controller: ShutdownController,
    *,
    interval: float,
    run_once: bool,
    idle_only: bool,
) -> None:
    """Call ``step`` until shutdown.

    With ``idle_only`` the loop only sleeps after a pass that did no work.
    A failing pass is logged and retried after ``interval``, except in
    ``run_once`` mode where it propagates.
    """
    interval = max(MIN_LOOP_INTERVAL_SECONDS, interval)
    logger.info("pipeline_loop_started", loop=loop, interval=interval, run_once=run_once)

    passes = 0
    while not controller.is_set():
        passes += 1
        try:
            done = step()
        except Exception:  # noqa: BLE001
            logger.exception("pipeline_loop_pass_failed", loop=loop, iteration=passes)
            if run_once:
                raise
            controller.wait(interval)
            continue

        if run_once:
            break
        if not idle_only or done <= 0:
            controller.wait(interval)

    logger.info("pipeline_loop_stopped", loop=loop, iterations=passes)


def run_worker_loop(
    worker: MediaGroupRecheckWorker,
    controller: ShutdownController,
    *,
    poll_interval: float,
    run_once: bool = False,
) -> None:
    """Drain due recheck tasks, sleeping ``poll_interval`` when the queue is empty."""
    _run_loop(
        "recheck_worker",
        worker.process_available_tasks,
        controller,
        interval=poll_interval,
        run_once=run_once,
        idle_only=True,
    )


def run_scheduler_loop(
    *,
    controller: ShutdownController,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], object],
) -> None:
    """Repeat a stateless sweep every ``interval_seconds``."""

    def step() -> int:
        action()
        return 0

    _run_loop(
        "scheduler",
        step,
        controller,
        interval=interval_seconds,
        run_once=run_once,
        idle_only=False,
    )


__all__ = [
    "ShutdownController",
    "initialize_logging",
    "run_scheduler_loop",
    "run_worker_loop",
    "shutdown_on_signals",
]
