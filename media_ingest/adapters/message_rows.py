"""Column mapping between :class:`Message` and the ``messages`` table.

Shared by the SQLite and PostgreSQL repositories. SQLite stores timestamps as
ISO-8601 text and JSON as text; PostgreSQL receives native datetimes and JSON
strings for its JSONB columns.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Final
from uuid import UUID

from pydantic import BaseModel

from media_ingest.domain.models import AuditEvent, Message

MESSAGE_COLUMNS: Final[tuple[str, ...]] = (
    "id",
    "platform_message_id",
    "chat_id",
    "chat_type",
    "chat_title",
    "media_group_id",
    "is_original_caption",
    "group_caption_synced",
    "message_caption_id",
    "caption",
    "analyzed_content",
    "old_analyzed_content",
    "edit_count",
    "edit_date",
    "file_unique_id",
    "file_id",
    "file_id_expires_at",
    "media_kind",
    "mime_type",
    "file_size",
    "storage_path",
    "public_url",
    "needs_redownload",
    "redownload_reason",
    "redownload_attempts",
    "redownload_flagged_at",
    "processing_state",
    "processing_started_at",
    "processing_completed_at",
    "error_message",
    "last_error_at",
    "retry_count",
    "correlation_id",
    "deleted_from_telegram",
    "deleted_at",
    "telegram_data",
    "created_at",
    "updated_at",
)

JSON_COLUMNS: Final[frozenset[str]] = frozenset(
    {"analyzed_content", "old_analyzed_content", "telegram_data"}
)
_UPDATABLE_COLUMNS: Final[frozenset[str]] = frozenset(MESSAGE_COLUMNS) - {"id"}

AUDIT_COLUMNS: Final[tuple[str, ...]] = (
    "event_type",
    "entity_id",
    "correlation_id",
    "metadata",
    "error_message",
    "created_at",
)


def iso_timestamp(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def encode_value(value: Any, *, datetime_as_text: bool) -> Any:
    """Convert a model value into something the DB driver accepts."""
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"))
    if isinstance(value, list | dict):
        return json.dumps(_jsonable(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime) and datetime_as_text:
        return iso_timestamp(value)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def encode_fields(
    fields: dict[str, Any], *, datetime_as_text: bool
) -> dict[str, Any]:
    """Encode an update mapping, rejecting unknown columns."""
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown message columns: {sorted(unknown)}")
    return {
        column: encode_value(value, datetime_as_text=datetime_as_text)
        for column, value in fields.items()
    }


def message_to_row(message: Message, *, datetime_as_text: bool) -> dict[str, Any]:
    return {
        column: encode_value(getattr(message, column), datetime_as_text=datetime_as_text)
        for column in MESSAGE_COLUMNS
    }


def _decode_json(value: Any) -> Any:
    if isinstance(value, str | bytes):
        return json.loads(value)
    return value


def row_to_message(row: Any) -> Message:
    """Build a Message from a ``sqlite3.Row`` or a ``RealDictRow``."""
    data = {column: row[column] for column in MESSAGE_COLUMNS}
    for column in JSON_COLUMNS:
        data[column] = _decode_json(data[column])
    data["old_analyzed_content"] = data["old_analyzed_content"] or []
    data["telegram_data"] = data["telegram_data"] or {}
    return Message.model_validate(data)


def audit_event_to_row(event: AuditEvent, *, datetime_as_text: bool) -> dict[str, Any]:
    return {
        "event_type": event.event_type,
        "entity_id": event.entity_id,
        "correlation_id": event.correlation_id,
        "metadata": json.dumps(_jsonable(event.metadata)),
        "error_message": event.error_message,
        "created_at": encode_value(event.created_at, datetime_as_text=datetime_as_text),
    }


def row_to_audit_event(row: Any) -> AuditEvent:
    data = {column: row[column] for column in AUDIT_COLUMNS}
    data["metadata"] = _decode_json(data["metadata"]) or {}
    return AuditEvent.model_validate(data)


__all__ = [
    "AUDIT_COLUMNS",
    "JSON_COLUMNS",
    "MESSAGE_COLUMNS",
    "audit_event_to_row",
    "encode_fields",
    "encode_value",
    "iso_timestamp",
    "message_to_row",
    "row_to_audit_event",
    "row_to_message",
]
