from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.api.app import SECRET_TOKEN_HEADER, create_app
from media_ingest.domain.models import Message, ProcessingState
from media_ingest.observability.tracing import CORRELATION_HEADER
from media_ingest.use_cases.service_factories import IngestServices
from tests.conftest import FakeBot, InMemoryObjectStore


@pytest.fixture
def client(services: IngestServices) -> TestClient:
    return TestClient(create_app(services))


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_webhook_ingests_update(
    client: TestClient,
    repo: SQLiteRepository,
    bot: FakeBot,
    photo_update: Callable[..., dict[str, Any]],
) -> None:
    bot.add_file("photo1", "photos/file_1.jpg")

    response = client.post(
        "/webhook",
        json=photo_update(1, caption="Widget #AB12521x3"),
        headers={CORRELATION_HEADER: "cid-web"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["action"] == "created"
    assert body["correlation_id"] == "cid-web"
    assert response.headers[CORRELATION_HEADER] == "cid-web"
    message = repo.find_by_platform_id(-1001, 1)
    assert message is not None
    assert message.correlation_id == "cid-web"


def test_webhook_acknowledges_invalid_json(client: TestClient) -> None:
    response = client.post(
        "/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 200
    assert response.json()["error"] == "invalid JSON"


def test_webhook_acknowledges_non_object_payload(client: TestClient) -> None:
    response = client.post("/webhook", json=[1, 2])

    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_webhook_rejects_wrong_secret(
    services: IngestServices, photo_update: Callable[..., dict[str, Any]]
) -> None:
    secured = dataclasses.replace(
        services,
        settings=services.settings.model_copy(
            update={"webhook_secret_token": SecretStr("s3cret")}
        ),
    )
    client = TestClient(create_app(secured))

    denied = client.post(
        "/webhook", json=photo_update(1), headers={SECRET_TOKEN_HEADER: "nope"}
    )
    missing = client.post("/webhook", json=photo_update(1))
    allowed = client.post(
        "/webhook", json=photo_update(1), headers={SECRET_TOKEN_HEADER: "s3cret"}
    )

    assert denied.status_code == 403
    assert missing.status_code == 403
    assert allowed.status_code == 200


def test_validate_operation_returns_envelope(
    client: TestClient,
    store: InMemoryObjectStore,
    make_message: Callable[..., Message],
) -> None:
    store.objects["uniq101.jpg"] = (b"x", "image/jpeg")
    message = make_message(storage_path="uniq101.jpg")

    response = client.post(
        "/operations/validate", json={"message_ids": [str(message.id)]}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["valid"] == 1
    assert response.headers[CORRELATION_HEADER] == body["correlation_id"]


def test_operation_without_body_uses_defaults(client: TestClient) -> None:
    response = client.post("/operations/repair")

    assert response.status_code == 200
    assert response.json()["data"]["processed"] == 0


def test_missing_message_id_is_a_validation_error(client: TestClient) -> None:
    response = client.post("/operations/reprocess", json={})

    assert response.status_code == 422
    assert response.json()["error_type"] == "validation"


def test_unknown_message_is_a_data_integrity_error(client: TestClient) -> None:
    response = client.post(
        "/operations/reprocess",
        json={"message_id": "00000000-0000-0000-0000-000000000001"},
    )

    assert response.status_code == 409
    assert response.json()["error_type"] == "data_integrity"


def test_unknown_operation_is_404(client: TestClient) -> None:
    assert client.post("/operations/explode").status_code == 404


def test_sync_operation_by_group(
    client: TestClient,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    make_message(
        caption="Widget #AB12521x3",
        media_group_id="g1",
        analyzed=True,
        processing_state=ProcessingState.COMPLETED,
    )
    sibling = make_message(media_group_id="g1", offset=1)

    response = client.post("/operations/sync", json={"media_group_id": "g1"})

    assert response.status_code == 200
    assert response.json()["data"]["updated_count"] == 1
    stored = repo.get_message(sibling.id)
    assert stored is not None
    assert stored.group_caption_synced is True


def test_delete_operation(
    client: TestClient,
    repo: SQLiteRepository,
    make_message: Callable[..., Message],
) -> None:
    message = make_message(caption="Widget")

    response = client.post("/operations/delete", json={"message_id": str(message.id)})

    assert response.json()["data"] == {"deleted": True}
    stored = repo.get_message(message.id)
    assert stored is not None
    assert stored.processing_state == ProcessingState.DELETED


def test_stats(client: TestClient, make_message: Callable[..., Message]) -> None:
    make_message(caption="Widget", processing_state=ProcessingState.PENDING)

    response = client.get("/stats")

    assert response.status_code == 200
    assert response.json()["data"]["states"] == {"pending": 1}
