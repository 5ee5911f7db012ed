"""Telegram Bot API client (implements TelegramBotPort).

Every request carries a fixed timeout. Network errors, 5xx and 429 responses
are retried with exponential backoff plus jitter; a ``retry_after`` hint from
the API replaces the computed delay.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import Any, Final

import requests

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.exceptions import (
    FileReferenceExpiredError,
    RateLimitError,
    TelegramAPIError,
)

logger = get_logger(__name__)

HTTP_STATUS_TOO_MANY_REQUESTS: Final[int] = 429
MAX_JITTER_SECONDS: Final[float] = 0.5
BASE_BACKOFF_SECONDS: Final[float] = 1.0

NOT_MODIFIED_MARKER: Final[str] = "message is not modified"
EXPIRED_FILE_MARKERS: Final[tuple[str, ...]] = (
    "wrong file_id",
    "file reference expired",
    "temporarily unavailable",
    "file_id is invalid",
    "invalid file_id",
)
MISSING_MESSAGE_MARKERS: Final[tuple[str, ...]] = (
    "message to delete not found",
    "message to edit not found",
)
# Retried with backoff; any other requests failure is reported immediately.
_TRANSIENT_TRANSPORT_ERRORS: Final[tuple[type[requests.RequestException], ...]] = (
    requests.Timeout,
    requests.ConnectionError,
    requests.exceptions.ChunkedEncodingError,
)


class TelegramBotClient:
    """Thin synchronous wrapper around the Bot API methods the service needs."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.telegram.org",
        timeout: float = 30.0,
        max_retries: int = 3,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._session = session or requests.Session()
        self._sleep = sleep
        self._random = rng or random.Random()

    def _method_url(self, method: str) -> str:
        return f"{self._base_url}/bot{self._token}/{method}"

    def _file_url(self, file_path: str) -> str:
        return f"{self._base_url}/file/bot{self._token}/{file_path}"

    # === TelegramBotPort ===

    def get_file_path(self, file_id: str) -> str:
        try:
            result = self._call("getFile", {"file_id": file_id})
        except TelegramAPIError as exc:
            if _is_expired_reference(str(exc)) or exc.status_code == 404:
                raise FileReferenceExpiredError(file_id, str(exc)) from exc
            raise
        file_path = result.get("file_path") if isinstance(result, dict) else None
        if not file_path:
            raise FileReferenceExpiredError(file_id, "getFile returned no file_path")
        return str(file_path)

    def download_file(self, file_path: str) -> bytes:
        response = self._request_with_backoff(
            "GET", self._file_url(file_path), action="download_file"
        )
        if response.status_code == 404:
            raise FileReferenceExpiredError(file_path, "file not found on Telegram")
        if response.status_code >= 400:
            raise TelegramAPIError(
                f"File download failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        content = response.content
        if not content:
            raise TelegramAPIError("Downloaded file is empty", status_code=200)
        return content

    def edit_message_caption(self, chat_id: int, message_id: int, caption: str) -> None:
        try:
            self._call(
                "editMessageCaption",
                {"chat_id": chat_id, "message_id": message_id, "caption": caption},
            )
        except TelegramAPIError as exc:
            if NOT_MODIFIED_MARKER in str(exc).lower():
                logger.info(
                    "telegram_caption_not_modified",
                    chat_id=chat_id,
                    message_id=message_id,
                )
                return
            raise

    def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
        except TelegramAPIError as exc:
            if any(marker in str(exc).lower() for marker in MISSING_MESSAGE_MARKERS):
                logger.info(
                    "telegram_message_already_deleted",
                    chat_id=chat_id,
                    message_id=message_id,
                )
                return
            raise

    # === Transport ===

    def _call(self, method: str, payload: dict[str, Any]) -> Any:
        response = self._request_with_backoff(
            "POST", self._method_url(method), action=method, json=payload
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise TelegramAPIError(
                f"{method}: invalid JSON response", status_code=response.status_code
            ) from exc

        if not body.get("ok"):
            description = body.get("description") or "unknown error"
            raise TelegramAPIError(
                f"{method}: {description}",
                status_code=body.get("error_code") or response.status_code,
            )
        return body.get("result")

    def _request_with_backoff(
        self, http_method: str, url: str, *, action: str, **kwargs: Any
    ) -> requests.Response:
        attempt = 0
        while True:
            try:
                response = self._session.request(
                    http_method, url, timeout=self._timeout, **kwargs
                )
            except _TRANSIENT_TRANSPORT_ERRORS as exc:
                if attempt >= self._max_retries:
                    raise TelegramAPIError(f"{action}: {exc}") from exc
                self._backoff(action, attempt, None, reason=type(exc).__name__)
                attempt += 1
                continue
            except requests.RequestException as exc:
                raise TelegramAPIError(f"{action}: {exc}") from exc

            status = response.status_code
            if status == HTTP_STATUS_TOO_MANY_REQUESTS or status >= 500:
                retry_after = _retry_after_seconds(response)
                if attempt >= self._max_retries:
                    if status == HTTP_STATUS_TOO_MANY_REQUESTS:
                        raise RateLimitError(
                            retry_after=int(retry_after) if retry_after else None
                        )
                    raise TelegramAPIError(
                        f"{action}: HTTP {status}", status_code=status
                    )
                self._backoff(action, attempt, retry_after, reason=f"http_{status}")
                attempt += 1
                continue

            return response

    def _backoff(
        self, action: str, attempt: int, retry_after: float | None, *, reason: str
    ) -> None:
        if retry_after is not None:
            delay = retry_after
        else:
            delay = BASE_BACKOFF_SECONDS * (2**attempt) + self._random.uniform(
                0.0, MAX_JITTER_SECONDS
            )
        logger.warning(
            "telegram_request_backoff",
            action=action,
            attempt=attempt + 1,
            reason=reason,
            wait_seconds=round(delay, 3),
        )
        self._sleep(delay)


def _is_expired_reference(description: str) -> bool:
    lowered = description.lower()
    return any(marker in lowered for marker in EXPIRED_FILE_MARKERS)


def _retry_after_seconds(response: requests.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            return max(float(header), 0.0)
        except (TypeError, ValueError):
            pass
    try:
        body = response.json()
    except ValueError:
        return None
    parameters = body.get("parameters") if isinstance(body, dict) else None
    if isinstance(parameters, dict) and parameters.get("retry_after") is not None:
        try:
            return max(float(parameters["retry_after"]), 0.0)
        except (TypeError, ValueError):
            return None
    return None


__all__ = ["TelegramBotClient"]
