"""Domain models for the ingest service.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ProcessingState(StrEnum):
    """Lifecycle of a message through caption analysis."""

    INITIALIZED = "initialized"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    ERROR = "error"
    DELETED = "deleted"


class ParsingMethod(StrEnum):
    """How analyzed content was produced."""

    MANUAL = "manual"
    AI = "ai"


class MediaKind(StrEnum):
    """Telegram attachment kinds the ingestor stores."""

    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"
    VOICE = "voice"
    ANIMATION = "animation"
    STICKER = "sticker"
    VIDEO_NOTE = "video_note"


class ParsingMetadata(BaseModel):
    """Bookkeeping attached to every parse result."""

    method: ParsingMethod = ParsingMethod.MANUAL
    timestamp: datetime = Field(default_factory=utc_now)
    partial_success: bool = False
    missing_fields: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    quantity_pattern: str | None = None
    quantity_confidence: float | None = None
    is_approximate: bool = False
    confidence: float | None = None
    error: str | None = None
    fallback_reason: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)  # type: ignore[return-value]


class ParsedContent(BaseModel):
    """Structured product data extracted from a caption."""

    product_name: str | None = None
    product_code: str | None = None
    vendor_uid: str | None = None
    purchase_date: str | None = Field(
        default=None, description="ISO date (YYYY-MM-DD)"
    )
    quantity: int | None = None
    notes: str | None = None
    caption: str = ""
    parsing_metadata: ParsingMetadata = Field(default_factory=ParsingMetadata)

    def without_timestamps(self) -> dict[str, Any]:
        """Dump for comparisons that must ignore when the parse ran."""

        data = self.model_dump(mode="json")
        data["parsing_metadata"].pop("timestamp", None)
        return data


class ContentSnapshot(BaseModel):
    """Archived analyzed content, appended to ``old_analyzed_content``."""

    archived_at: datetime = Field(default_factory=utc_now)
    reason: str
    source_message_id: UUID | None = None
    content: dict[str, Any]

    @field_validator("archived_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)  # type: ignore[return-value]


class MediaRef(BaseModel):
    """Platform file reference plus what we know about its bytes."""

    file_id: str
    file_unique_id: str
    media_kind: MediaKind
    mime_type: str | None = None
    file_name: str | None = None
    file_size: int | None = None


class Message(BaseModel):
    """A stored Telegram message with its analysis and media state."""

    id: UUID = Field(default_factory=uuid4)
    platform_message_id: int
    chat_id: int
    chat_type: str | None = None
    chat_title: str | None = None

    media_group_id: str | None = None
    is_original_caption: bool = False
    group_caption_synced: bool = False
    message_caption_id: UUID | None = None

    caption: str | None = None
    analyzed_content: ParsedContent | None = None
    old_analyzed_content: list[ContentSnapshot] = Field(default_factory=list)
    edit_count: int = 0
    edit_date: datetime | None = None

    file_unique_id: str | None = None
    file_id: str | None = None
    file_id_expires_at: datetime | None = None
    media_kind: MediaKind | None = None
    mime_type: str | None = None
    file_size: int | None = None
    storage_path: str | None = None
    public_url: str | None = None
    needs_redownload: bool = False
    redownload_reason: str | None = None
    redownload_attempts: int = 0
    redownload_flagged_at: datetime | None = None

    processing_state: ProcessingState = ProcessingState.INITIALIZED
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    error_message: str | None = None
    last_error_at: datetime | None = None
    retry_count: int = 0
    correlation_id: str | None = None

    deleted_from_telegram: bool = False
    deleted_at: datetime | None = None

    telegram_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "edit_date",
        "file_id_expires_at",
        "redownload_flagged_at",
        "processing_started_at",
        "processing_completed_at",
        "last_error_at",
        "deleted_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def has_caption(self) -> bool:
        return bool(self.caption and self.caption.strip())

    def media_ref(self) -> MediaRef | None:
        if not self.file_id or not self.file_unique_id or self.media_kind is None:
            return None
        return MediaRef(
            file_id=self.file_id,
            file_unique_id=self.file_unique_id,
            media_kind=self.media_kind,
            mime_type=self.mime_type,
            file_size=self.file_size,
        )


class AuditEvent(BaseModel):
    """Row written to the audit log for cross-system tracing."""

    event_type: str
    entity_id: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class AcquisitionResult(BaseModel):
    """Where acquired media ended up."""

    storage_path: str
    public_url: str
    mime_type: str
    reused: bool = False
    file_id: str | None = None


class SiblingSyncResult(BaseModel):
    message_id: UUID
    status: str = Field(..., description="updated, unchanged, skipped or failed")
    error: str | None = None


class GroupSyncResult(BaseModel):
    """Outcome of propagating content across a media group."""

    media_group_id: str
    source_message_id: UUID | None = None
    updated_count: int = 0
    per_message_results: list[SiblingSyncResult] = Field(default_factory=list)
    reason: str | None = None

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.per_message_results if item.status == "failed")


class CaptionWorkflowResult(BaseModel):
    """Outcome of one caption workflow run for a message."""

    message_id: UUID
    claimed: bool
    processing_state: ProcessingState | None = None
    analyzed_content: ParsedContent | None = None
    group_sync: GroupSyncResult | None = None
    detail: str | None = None


class StalledSweepResult(BaseModel):
    reset_to_pending: list[UUID] = Field(default_factory=list)
    moved_to_error: list[UUID] = Field(default_factory=list)


class StorageCheckDetail(BaseModel):
    message_id: UUID
    status: str = Field(..., description="valid, repaired, flagged or error")
    storage_path: str | None = None
    reason: str | None = None


class StorageReport(BaseModel):
    """Result of a validation or repair pass."""

    processed: int = 0
    valid: int = 0
    invalid: int = 0
    repaired: int = 0
    details: list[StorageCheckDetail] = Field(default_factory=list)

    def add(self, detail: StorageCheckDetail) -> None:
        self.processed += 1
        if detail.status == "valid":
            self.valid += 1
        elif detail.status == "repaired":
            self.repaired += 1
        else:
            self.invalid += 1
        self.details.append(detail)


class RedownloadResult(BaseModel):
    message_id: UUID
    success: bool
    storage_path: str | None = None
    file_id_used: str | None = None
    attempts: int = 0
    reason: str | None = None


class IngestOutcome(BaseModel):
    """What the webhook did with one update."""

    update_type: str
    action: str = Field(..., description="created, updated, duplicate or ignored")
    message_id: UUID | None = None
    detail: str | None = None


class ProcessingHealth(BaseModel):
    states: dict[str, int] = Field(default_factory=dict)
    needs_redownload: int = 0
    stalled_processing: int = 0
    groups_awaiting_sync: int = 0
    generated_at: datetime = Field(default_factory=utc_now)


class OperationEnvelope(BaseModel):
    """Uniform response shape for maintenance operations."""

    success: bool
    data: Any | None = None
    error: str | None = None
    error_type: str | None = None
    correlation_id: str


class PendingSweepResult(BaseModel):
    """Summary of one pending-work sweep."""

    stalled: StalledSweepResult = Field(default_factory=StalledSweepResult)
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    groups_synced: int = 0
    recheck_tasks: int = 0
