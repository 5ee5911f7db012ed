from __future__ import annotations

import signal
from types import SimpleNamespace
from typing import Any

import pytest

from scripts import pipeline_runtime


def _settings() -> SimpleNamespace:
    return SimpleNamespace(
        log_level="INFO",
        json_logs=False,
        pending_batch_size=50,
        inconsistent_group_batch_size=20,
        validation_batch_size=100,
    )


def _patch_runtime(module: Any, mocker: Any) -> Any:
    mocker.patch.object(module, "get_settings", return_value=_settings())
    mocker.patch.object(module.pipeline_runtime, "initialize_logging")
    controller = mocker.Mock()
    controller.is_set.return_value = False
    mocker.patch.object(
        module.pipeline_runtime, "shutdown_on_signals", return_value=controller
    )
    if hasattr(module, "ensure_metrics_exporter"):
        mocker.patch.object(module, "ensure_metrics_exporter")
    services = mocker.Mock()
    mocker.patch.object(module, "build_services", return_value=services)
    return services


def test_run_pending_sweep_once(mocker) -> None:
    module = __import__("scripts.run_pending_sweep", fromlist=["main"])
    services = _patch_runtime(module, mocker)
    sweep = mocker.patch.object(module, "run_pending_sweep")

    exit_code = module.main(["--run-once", "--batch-size", "7"])

    assert exit_code == 0
    sweep.assert_called_once()
    kwargs = sweep.call_args.kwargs
    assert kwargs["repository"] is services.repository
    assert kwargs["batch_size"] == 7
    assert kwargs["group_batch_size"] == 20


def test_run_recheck_worker_once(mocker) -> None:
    module = __import__("scripts.run_recheck_worker", fromlist=["main"])
    services = _patch_runtime(module, mocker)
    worker_instance = mocker.Mock()
    mocker.patch.object(module, "MediaGroupRecheckWorker", return_value=worker_instance)
    run_loop = mocker.patch.object(module.pipeline_runtime, "run_worker_loop")

    exit_code = module.main(["--run-once", "--batch-size", "3"])

    assert exit_code == 0
    module.MediaGroupRecheckWorker.assert_called_once_with(
        task_queue=services.repository.task_queue.return_value,
        handle_recheck=services.group_sync.handle_recheck,
        batch_size=3,
    )
    args, kwargs = run_loop.call_args
    assert args[0] is worker_instance
    assert kwargs["run_once"] is True


def test_run_storage_validation_once(mocker) -> None:
    module = __import__("scripts.run_storage_validation", fromlist=["main"])
    services = _patch_runtime(module, mocker)
    services.maintenance.repair.return_value = SimpleNamespace(
        processed=3, repaired=1, invalid=1
    )
    services.maintenance.redownload_flagged.return_value = [
        SimpleNamespace(success=True),
        SimpleNamespace(success=False),
    ]

    assert module.main(["--run-once"]) == 0
    services.maintenance.repair.assert_called_once()
    services.maintenance.redownload_flagged.assert_called_once()


def test_run_storage_validation_can_skip_redownload(mocker) -> None:
    module = __import__("scripts.run_storage_validation", fromlist=["main"])
    services = _patch_runtime(module, mocker)
    services.maintenance.repair.return_value = SimpleNamespace(
        processed=0, repaired=0, invalid=0
    )

    assert module.main(["--run-once", "--skip-redownload"]) == 0
    services.maintenance.redownload_flagged.assert_not_called()


def test_misconfiguration_exits_non_zero(mocker) -> None:
    module = __import__("scripts.run_pending_sweep", fromlist=["main"])
    _patch_runtime(module, mocker)
    mocker.patch.object(module, "build_services", side_effect=ValueError("no token"))

    assert module.main(["--run-once"]) == 1


def test_serve_webhook_runs_uvicorn(mocker) -> None:
    module = __import__("scripts.serve_webhook", fromlist=["main"])
    services = _patch_runtime(module, mocker)
    app = mocker.Mock()
    mocker.patch.object(module, "create_app", return_value=app)
    run = mocker.patch.object(module.uvicorn, "run")

    assert module.main(["--port", "9001"]) == 0
    module.create_app.assert_called_once_with(services)
    run.assert_called_once_with(app, host="0.0.0.0", port=9001, log_config=None)


def test_worker_loop_idles_until_shutdown(mocker) -> None:
    controller = mocker.Mock()
    controller.is_set.side_effect = [False, False, True]
    worker = mocker.Mock()
    worker.process_available_tasks.side_effect = [2, 0]

    pipeline_runtime.run_worker_loop(worker, controller, poll_interval=0.5)

    assert worker.process_available_tasks.call_count == 2
    controller.wait.assert_called_once_with(0.5)


def test_scheduler_loop_reraises_when_running_once(mocker) -> None:
    controller = mocker.Mock()
    controller.is_set.return_value = False
    action = mocker.Mock(side_effect=RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        pipeline_runtime.run_scheduler_loop(
            controller=controller, interval_seconds=1.0, run_once=True, action=action
        )


def test_scheduler_loop_waits_after_every_pass(mocker) -> None:
    controller = mocker.Mock()
    controller.is_set.side_effect = [False, False, True]
    action = mocker.Mock()

    pipeline_runtime.run_scheduler_loop(
        controller=controller, interval_seconds=0.01, run_once=False, action=action
    )

    assert action.call_count == 2
    assert controller.wait.call_args_list == [mocker.call(0.1), mocker.call(0.1)]


def test_shutdown_signal_stops_loops(mocker) -> None:
    install = mocker.patch.object(pipeline_runtime.signal, "signal")

    controller = pipeline_runtime.shutdown_on_signals()

    assert [call.args[0] for call in install.call_args_list] == [
        signal.SIGTERM,
        signal.SIGINT,
    ]
    assert controller.is_set() is False
    handler = install.call_args_list[0].args[1]
    handler(signal.SIGTERM, None)
    assert controller.is_set() is True
