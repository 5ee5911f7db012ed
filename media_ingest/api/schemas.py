"""Request bodies for the HTTP operations."""

from uuid import UUID

from pydantic import BaseModel, Field


class OperationRequest(BaseModel):
    """Shared body for ``POST /operations/{name}``.

    Each operation reads the fields it needs; batch operations fall back to
    ``limit``/``offset`` paging when no ids are given.
    """

    message_id: UUID | None = None
    message_ids: list[UUID] | None = None
    media_group_id: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    caption: str | None = None
    force_sync: bool = False
    sync_edit_history: bool = False
    delete_from_telegram: bool = False
    hard: bool = False
