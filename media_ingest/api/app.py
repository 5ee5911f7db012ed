"""HTTP surface: Telegram webhook, maintenance operations and health."""

import hmac
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Final

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from media_ingest.api.schemas import OperationRequest
from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import ValidationError
from media_ingest.observability.tracing import (
    CORRELATION_HEADER,
    correlation_scope,
)
from media_ingest.services.operations import (
    ERROR_TYPE_DATA_INTEGRITY,
    ERROR_TYPE_EXTERNAL_API,
    ERROR_TYPE_TRANSIENT,
    ERROR_TYPE_VALIDATION,
    run_operation,
)
from media_ingest.use_cases.processing_health import build_health_report
from media_ingest.use_cases.service_factories import IngestServices

logger = get_logger(__name__)

SECRET_TOKEN_HEADER: Final[str] = "X-Telegram-Bot-Api-Secret-Token"

_STATUS_BY_ERROR_TYPE: Final[dict[str, int]] = {
    ERROR_TYPE_VALIDATION: 422,
    ERROR_TYPE_DATA_INTEGRITY: 409,
    ERROR_TYPE_EXTERNAL_API: 502,
    ERROR_TYPE_TRANSIENT: 503,
}

OperationHandler = Callable[[IngestServices, OperationRequest, str], Any]


def _require_message_id(request: OperationRequest) -> Any:
    if request.message_id is None:
        raise ValidationError("message_id is required")
    return request.message_id


def _repair(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    return services.maintenance.repair(
        request.message_ids, limit=request.limit, offset=request.offset, correlation_id=cid
    )


def _standardize_paths(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    return services.maintenance.standardize_paths(
        request.message_ids, limit=request.limit, offset=request.offset
    )


def _fix_urls(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    return services.maintenance.fix_urls(
        request.message_ids, limit=request.limit, offset=request.offset
    )


def _validate(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    return services.maintenance.validate(
        request.message_ids, limit=request.limit, offset=request.offset, correlation_id=cid
    )


def _redownload(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    if request.message_id is not None:
        return services.maintenance.redownload(request.message_id, correlation_id=cid)
    return services.maintenance.redownload_flagged(limit=request.limit, correlation_id=cid)


def _sync(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    if request.message_id is not None:
        return services.group_sync.sync_group_content(
            request.message_id,
            force_sync=request.force_sync,
            sync_edit_history=request.sync_edit_history,
            correlation_id=cid,
        )
    if request.media_group_id:
        return services.group_sync.sync(
            request.media_group_id,
            force_sync=request.force_sync,
            sync_edit_history=request.sync_edit_history,
            correlation_id=cid,
        )
    return services.group_sync.sync_inconsistent_groups(request.limit, correlation_id=cid)


def _reprocess(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    return services.admin.force_reprocess(_require_message_id(request), correlation_id=cid)


def _edit_caption(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    result = services.admin.edit_caption(
        _require_message_id(request), request.caption or "", correlation_id=cid
    )
    return result if result is not None else {"changed": False}


def _delete(services: IngestServices, request: OperationRequest, cid: str) -> Any:
    message_id = _require_message_id(request)
    if request.hard:
        return {"deleted": services.admin.hard_delete(message_id, correlation_id=cid)}
    return {
        "deleted": services.admin.delete_message(
            message_id,
            delete_from_telegram=request.delete_from_telegram,
            correlation_id=cid,
        )
    }


OPERATIONS: Final[dict[str, OperationHandler]] = {
    "repair": _repair,
    "standardize-paths": _standardize_paths,
    "fix-urls": _fix_urls,
    "validate": _validate,
    "redownload": _redownload,
    "sync": _sync,
    "reprocess": _reprocess,
    "edit-caption": _edit_caption,
    "delete": _delete,
}


def create_app(services: IngestServices) -> FastAPI:
    """Build the FastAPI application around already-wired services."""

    app = FastAPI(title="Telegram Media Ingest")
    app.state.services = services
    secret = services.settings.webhook_secret_token

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhook")
    async def telegram_webhook(
        request: Request,
        secret_token: str | None = Header(default=None, alias=SECRET_TOKEN_HEADER),
        correlation_id: str | None = Header(default=None, alias=CORRELATION_HEADER),
    ) -> JSONResponse:
        if secret is not None and not hmac.compare_digest(
            secret_token or "", secret.get_secret_value()
        ):
            logger.warning("webhook_secret_mismatch")
            raise HTTPException(status_code=403, detail="invalid secret token")

        with correlation_scope(correlation_id) as cid:
            try:
                update = await request.json()
            except ValueError:
                logger.warning("webhook_invalid_json")
                return _webhook_response({"ok": True, "error": "invalid JSON"}, cid)
            if not isinstance(update, dict):
                return _webhook_response({"ok": True, "error": "update must be an object"}, cid)

            try:
                outcome = await run_in_threadpool(
                    services.ingestor.handle_update, update, correlation_id=cid
                )
            except Exception as e:  # noqa: BLE001
                # Telegram redelivers on non-2xx; the failure is in logs and on the row
                logger.exception("webhook_update_failed", error=str(e))
                return _webhook_response({"ok": True, "error": str(e)}, cid)

            return _webhook_response(
                {"ok": True, **outcome.model_dump(mode="json")}, cid
            )

    @app.post("/operations/{name}")
    def run_named_operation(
        name: str,
        body: OperationRequest | None = None,
        correlation_id: str | None = Header(default=None, alias=CORRELATION_HEADER),
    ) -> JSONResponse:
        handler = OPERATIONS.get(name)
        if handler is None:
            raise HTTPException(status_code=404, detail=f"unknown operation: {name}")
        request = body or OperationRequest()

        envelope = run_operation(
            name,
            lambda cid: handler(services, request, cid),
            correlation_id=correlation_id,
        )
        status_code = 200
        if not envelope.success:
            status_code = _STATUS_BY_ERROR_TYPE.get(envelope.error_type or "", 500)
        return JSONResponse(
            status_code=status_code,
            content=envelope.model_dump(mode="json"),
            headers={CORRELATION_HEADER: envelope.correlation_id},
        )

    @app.get("/stats")
    def processing_stats(
        correlation_id: str | None = Header(default=None, alias=CORRELATION_HEADER),
    ) -> JSONResponse:
        stale_after = timedelta(minutes=services.settings.stale_processing_minutes)
        envelope = run_operation(
            "stats",
            lambda cid: build_health_report(
                services.repository, stale_after=stale_after, correlation_id=cid
            ),
            correlation_id=correlation_id,
        )
        return JSONResponse(
            status_code=200 if envelope.success else 500,
            content=envelope.model_dump(mode="json"),
            headers={CORRELATION_HEADER: envelope.correlation_id},
        )

    return app


def _webhook_response(content: dict[str, Any], correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={**content, "correlation_id": correlation_id},
        headers={CORRELATION_HEADER: correlation_id},
    )


__all__ = ["OPERATIONS", "create_app"]
