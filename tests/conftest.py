"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.config.settings import Settings
from media_ingest.domain.exceptions import FileReferenceExpiredError, ObjectStoreError
from media_ingest.domain.models import MediaKind, Message
from media_ingest.services.caption_parser import parse_caption
from media_ingest.services.retry import RetryExecutor
from media_ingest.use_cases.service_factories import IngestServices, build_services

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
STORAGE_BASE_URL = "http://storage.test/telegram-media"


class FakeClock:
    """Deterministic clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class InMemoryObjectStore:
    """ObjectStorePort keeping objects in a dict."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.uploads: list[str] = []
        self.deleted: list[str] = []
        self.unreachable = False

    def upload(
        self, key: str, data: bytes, content_type: str, *, upsert: bool = True
    ) -> str:
        if self.unreachable:
            raise ObjectStoreError("storage unreachable")
        if upsert or key not in self.objects:
            self.objects[key] = (data, content_type)
        self.uploads.append(key)
        return self.public_url(key)

    def exists(self, key: str) -> bool:
        if self.unreachable:
            raise ObjectStoreError("storage unreachable")
        return key in self.objects

    def download(self, key: str) -> bytes:
        if key not in self.objects:
            raise ObjectStoreError(f"missing object {key}")
        return self.objects[key][0]

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)

    def public_url(self, key: str) -> str:
        return f"{STORAGE_BASE_URL}/{key}"


class FakeBot:
    """TelegramBotPort serving files registered by the test."""

    def __init__(self) -> None:
        self.files: dict[str, tuple[str, bytes]] = {}
        self.expired: set[str] = set()
        self.get_file_calls: list[str] = []
        self.edited_captions: list[tuple[int, int, str]] = []
        self.deleted_messages: list[tuple[int, int]] = []

    def add_file(self, file_id: str, file_path: str, data: bytes = b"bytes") -> None:
        self.files[file_id] = (file_path, data)

    def get_file_path(self, file_id: str) -> str:
        self.get_file_calls.append(file_id)
        if file_id in self.expired or file_id not in self.files:
            raise FileReferenceExpiredError(file_id, "Bad Request: wrong file_id")
        return self.files[file_id][0]

    def download_file(self, file_path: str) -> bytes:
        for path, data in self.files.values():
            if path == file_path:
                return data
        raise FileReferenceExpiredError(file_path, "file not found on Telegram")

    def edit_message_caption(self, chat_id: int, message_id: int, caption: str) -> None:
        self.edited_captions.append((chat_id, message_id, caption))

    def delete_message(self, chat_id: int, message_id: int) -> None:
        self.deleted_messages.append((chat_id, message_id))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with defaults only, pointing at a temporary SQLite file."""

    base_settings = Settings(_config_dir=tmp_path / "config")
    return base_settings.model_copy(
        update={
            "database_type": "sqlite",
            "db_path": str(tmp_path / "db" / "test.sqlite"),
            "llm_enabled": False,
            "openai_api_key": None,
            "webhook_secret_token": None,
        }
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[SQLiteRepository, None, None]:
    repository = SQLiteRepository(
        db_path=settings.db_path,
        retry_executor=RetryExecutor(sleep=lambda _: None),
    )
    yield repository
    db_path = Path(settings.db_path)
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def services(
    settings: Settings,
    repo: SQLiteRepository,
    store: InMemoryObjectStore,
    bot: FakeBot,
    clock: FakeClock,
) -> IngestServices:
    return build_services(settings, repository=repo, store=store, bot=bot, clock=clock)


@pytest.fixture
def make_message(
    repo: SQLiteRepository, clock: FakeClock
) -> Callable[..., Message]:
    """Insert a message row; ``offset`` orders rows by creation time."""

    counter = {"next_id": 100}

    def _make(
        *,
        caption: str | None = None,
        media_group_id: str | None = None,
        offset: int = 0,
        analyzed: bool = False,
        **overrides: Any,
    ) -> Message:
        counter["next_id"] += 1
        file_unique_id = overrides.pop("file_unique_id", f"uniq{counter['next_id']}")
        fields: dict[str, Any] = {
            "platform_message_id": counter["next_id"],
            "chat_id": -1001,
            "chat_type": "channel",
            "media_group_id": media_group_id,
            "caption": caption,
            "file_id": f"file{counter['next_id']}",
            "file_unique_id": file_unique_id,
            "media_kind": MediaKind.PHOTO,
            "mime_type": "image/jpeg",
            "created_at": clock() + timedelta(seconds=offset),
        }
        if analyzed and caption:
            fields["analyzed_content"] = parse_caption(
                caption, now=clock(), today=clock().date()
            )
        fields.update(overrides)
        return repo.insert_message(Message(**fields))

    return _make


@pytest.fixture
def photo_update() -> Callable[..., dict[str, Any]]:
    """Build a Bot API update carrying a photo."""

    def _build(
        message_id: int,
        *,
        chat_id: int = -1001,
        caption: str | None = None,
        media_group_id: str | None = None,
        file_id: str | None = None,
        file_unique_id: str | None = None,
        key: str = "message",
        edit_date: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message_id": message_id,
            "date": 1717243200,
            "chat": {"id": chat_id, "type": "channel", "title": "Restock"},
            "photo": [
                {
                    "file_id": f"{file_id or f'photo{message_id}'}-small",
                    "file_unique_id": f"{file_unique_id or f'uniq{message_id}'}-small",
                    "width": 90,
                    "height": 90,
                    "file_size": 1200,
                },
                {
                    "file_id": file_id or f"photo{message_id}",
                    "file_unique_id": file_unique_id or f"uniq{message_id}",
                    "width": 1280,
                    "height": 960,
                    "file_size": 120000,
                },
            ],
        }
        if caption is not None:
            payload["caption"] = caption
        if media_group_id is not None:
            payload["media_group_id"] = media_group_id
        if edit_date is not None:
            payload["edit_date"] = edit_date
        return {"update_id": 9000 + message_id, key: payload}

    return _build

