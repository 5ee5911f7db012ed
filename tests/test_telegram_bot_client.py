from __future__ import annotations

from typing import Any

import pytest
import requests
from pytest_mock import MockerFixture

from media_ingest.adapters.telegram_bot_client import TelegramBotClient
from media_ingest.domain.exceptions import (
    FileReferenceExpiredError,
    RateLimitError,
    TelegramAPIError,
)


def _response(
    mocker: MockerFixture,
    status: int,
    body: Any = None,
    *,
    headers: dict[str, str] | None = None,
    content: bytes = b"",
) -> Any:
    response = mocker.MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.content = content
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def session(mocker: MockerFixture) -> Any:
    return mocker.MagicMock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def client(session: Any, sleeps: list[float]) -> TelegramBotClient:
    return TelegramBotClient(
        "123:abc",
        base_url="https://tg.test/",
        session=session,
        sleep=sleeps.append,
        max_retries=2,
    )


def test_get_file_path(client: TelegramBotClient, session: Any, mocker: MockerFixture) -> None:
    session.request.return_value = _response(
        mocker, 200, {"ok": True, "result": {"file_path": "photos/file_1.jpg"}}
    )

    assert client.get_file_path("AgAC") == "photos/file_1.jpg"
    method, url = session.request.call_args.args
    assert method == "POST"
    assert url == "https://tg.test/bot123:abc/getFile"
    assert session.request.call_args.kwargs["json"] == {"file_id": "AgAC"}
    assert session.request.call_args.kwargs["timeout"] == 30.0


def test_wrong_file_id_means_expired_reference(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(
        mocker,
        400,
        {"ok": False, "error_code": 400, "description": "Bad Request: wrong file_id"},
    )

    with pytest.raises(FileReferenceExpiredError) as exc_info:
        client.get_file_path("AgAC")
    assert exc_info.value.file_id == "AgAC"


def test_download_file(client: TelegramBotClient, session: Any, mocker: MockerFixture) -> None:
    session.request.return_value = _response(mocker, 200, content=b"jpeg")

    assert client.download_file("photos/file_1.jpg") == b"jpeg"
    assert session.request.call_args.args == (
        "GET",
        "https://tg.test/file/bot123:abc/photos/file_1.jpg",
    )


def test_download_404_is_expired(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(mocker, 404)

    with pytest.raises(FileReferenceExpiredError):
        client.download_file("photos/gone.jpg")


def test_rate_limit_uses_retry_after_then_succeeds(
    client: TelegramBotClient,
    session: Any,
    sleeps: list[float],
    mocker: MockerFixture,
) -> None:
    session.request.side_effect = [
        _response(
            mocker,
            429,
            {"ok": False, "error_code": 429, "parameters": {"retry_after": 7}},
        ),
        _response(mocker, 503, headers={"Retry-After": "2"}),
        _response(mocker, 200, {"ok": True, "result": {"file_path": "p.jpg"}}),
    ]

    assert client.get_file_path("AgAC") == "p.jpg"
    assert sleeps == [7.0, 2.0]


def test_persistent_rate_limit_raises(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(
        mocker, 429, {"ok": False, "parameters": {"retry_after": 3}}
    )

    with pytest.raises(RateLimitError) as exc_info:
        client.get_file_path("AgAC")
    assert exc_info.value.retry_after == 3
    assert session.request.call_count == 3


def test_network_errors_are_retried_with_backoff(
    client: TelegramBotClient,
    session: Any,
    sleeps: list[float],
) -> None:
    session.request.side_effect = requests.ConnectionError("reset")

    with pytest.raises(TelegramAPIError):
        client.download_file("photos/file.jpg")
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.5
    assert 2.0 <= sleeps[1] <= 2.5


def test_broken_chunked_download_is_retried(
    client: TelegramBotClient,
    session: Any,
    sleeps: list[float],
    mocker: MockerFixture,
) -> None:
    session.request.side_effect = [
        requests.exceptions.ChunkedEncodingError("connection broken"),
        _response(mocker, 200, content=b"jpeg-bytes"),
    ]

    assert client.download_file("photos/file.jpg") == b"jpeg-bytes"
    assert len(sleeps) == 1


def test_other_request_errors_become_api_errors_without_retry(
    client: TelegramBotClient,
    session: Any,
    sleeps: list[float],
) -> None:
    session.request.side_effect = requests.TooManyRedirects("redirect loop")

    with pytest.raises(TelegramAPIError, match="redirect loop"):
        client.get_file_path("file1")
    assert session.request.call_count == 1
    assert sleeps == []


def test_not_modified_caption_is_ignored(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(
        mocker,
        400,
        {
            "ok": False,
            "error_code": 400,
            "description": "Bad Request: message is not modified",
        },
    )

    client.edit_message_caption(-1001, 5, "Widget")


def test_other_edit_errors_propagate(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(
        mocker, 403, {"ok": False, "error_code": 403, "description": "Forbidden"}
    )

    with pytest.raises(TelegramAPIError) as exc_info:
        client.edit_message_caption(-1001, 5, "Widget")
    assert exc_info.value.status_code == 403


def test_deleting_missing_message_is_ignored(
    client: TelegramBotClient, session: Any, mocker: MockerFixture
) -> None:
    session.request.return_value = _response(
        mocker,
        400,
        {"ok": False, "description": "Bad Request: message to delete not found"},
    )

    client.delete_message(-1001, 5)
