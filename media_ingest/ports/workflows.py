"""Ports for the two workflows the ingest coordinator drives."""

from __future__ import annotations

from typing import Protocol, runtime_checkable
from uuid import UUID

from media_ingest.domain.models import (
    CaptionWorkflowResult,
    GroupSyncResult,
    ParsedContent,
)


@runtime_checkable
class GroupSyncPort(Protocol):
    def sync_group_content(
        self,
        message_id: UUID,
        content: ParsedContent | None = None,
        *,
        force_sync: bool = False,
        sync_edit_history: bool = False,
        correlation_id: str | None = None,
    ) -> GroupSyncResult:
        """Propagate ``message_id``'s content to every sibling in its group."""


@runtime_checkable
class CaptionWorkflowPort(Protocol):
    def run(
        self,
        message_id: UUID,
        correlation_id: str | None = None,
        *,
        force: bool = False,
    ) -> CaptionWorkflowResult:
        """Claim, parse and store analyzed content for one message."""


__all__ = ["CaptionWorkflowPort", "GroupSyncPort"]
