"""Factories composing the ingest services from settings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from media_ingest.adapters.llm_client import OpenAICompletionClient
from media_ingest.adapters.minio_store import MinioObjectStore
from media_ingest.adapters.repository_factory import create_repository
from media_ingest.adapters.telegram_bot_client import TelegramBotClient
from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import Settings
from media_ingest.domain.models import utc_now
from media_ingest.domain.protocols import (
    AICompletionPort,
    MessageRepository,
    ObjectStorePort,
    TelegramBotPort,
)
from media_ingest.services.caption_analysis import AICaptionParser, CaptionAnalyzer
from media_ingest.use_cases.caption_workflow import CaptionWorkflow
from media_ingest.use_cases.ingest_update import UpdateIngestor
from media_ingest.use_cases.media_acquisition import MediaAcquirer
from media_ingest.use_cases.media_group_sync import MediaGroupSynchronizer
from media_ingest.use_cases.message_admin import MessageAdmin
from media_ingest.use_cases.processing_state import ProcessingStateMachine
from media_ingest.use_cases.storage_maintenance import StorageMaintenance

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class IngestServices:
    """Everything the webhook, operations and sweeps need."""

    settings: Settings
    repository: MessageRepository
    store: ObjectStorePort
    bot: TelegramBotPort
    state_machine: ProcessingStateMachine
    group_sync: MediaGroupSynchronizer
    caption_workflow: CaptionWorkflow
    acquirer: MediaAcquirer
    maintenance: StorageMaintenance
    admin: MessageAdmin
    ingestor: UpdateIngestor


def create_object_store(settings: Settings) -> MinioObjectStore:
    if settings.minio_access_key is None or settings.minio_secret_key is None:
        raise ValueError("MINIO_ACCESS_KEY and MINIO_SECRET_KEY must be set")
    return MinioObjectStore.from_credentials(
        settings.minio_endpoint,
        settings.minio_access_key.get_secret_value(),
        settings.minio_secret_key.get_secret_value(),
        settings.minio_bucket,
        settings.storage_public_base_url,
        secure=settings.minio_secure,
    )


def create_bot_client(settings: Settings) -> TelegramBotClient:
    if settings.telegram_bot_token is None:
        raise ValueError("TELEGRAM_BOT_TOKEN must be set")
    return TelegramBotClient(
        settings.telegram_bot_token.get_secret_value(),
        base_url=settings.telegram_api_base_url,
        timeout=settings.telegram_request_timeout_seconds,
        max_retries=settings.telegram_max_retries,
    )


def create_completion_client(settings: Settings) -> AICompletionPort | None:
    """OpenAI client when AI parsing is enabled and a key is configured."""
    if not settings.ai_parsing_available:
        logger.info("ai_caption_parsing_disabled")
        return None
    assert settings.openai_api_key is not None
    return OpenAICompletionClient(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout_seconds,
        prompt_file=settings.llm_prompt_file,
    )


def build_services(
    settings: Settings,
    *,
    repository: MessageRepository | None = None,
    store: ObjectStorePort | None = None,
    bot: TelegramBotPort | None = None,
    completion: AICompletionPort | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> IngestServices:
    """Wire the services; adapters not passed in are built from ``settings``."""
    repository = repository or create_repository(settings)
    store = store or create_object_store(settings)
    bot = bot or create_bot_client(settings)
    if completion is None:
        completion = create_completion_client(settings)

    file_reference_ttl = timedelta(hours=settings.file_reference_ttl_hours)
    state_machine = ProcessingStateMachine(
        repository,
        stale_after=timedelta(minutes=settings.stale_processing_minutes),
        max_stalled_retries=settings.max_stalled_retries,
        clock=clock,
    )
    group_sync = MediaGroupSynchronizer(
        repository,
        state_machine,
        recheck_delay=timedelta(seconds=settings.media_group_recheck_delay_seconds),
        clock=clock,
    )
    analyzer = CaptionAnalyzer(
        AICaptionParser(completion) if completion is not None else None,
        confidence_threshold=settings.ai_confidence_threshold,
        clock=clock,
    )
    caption_workflow = CaptionWorkflow(
        repository, state_machine, analyzer, group_sync, clock=clock
    )
    acquirer = MediaAcquirer(
        repository, store, bot, file_reference_ttl=file_reference_ttl, clock=clock
    )
    maintenance = StorageMaintenance(
        repository,
        store,
        acquirer,
        max_redownload_attempts=settings.max_redownload_attempts,
    )
    admin = MessageAdmin(
        repository, store, bot, state_machine, caption_workflow, clock=clock
    )
    ingestor = UpdateIngestor(
        repository,
        acquirer,
        caption_workflow,
        state_machine,
        file_reference_ttl=file_reference_ttl,
        clock=clock,
    )
    return IngestServices(
        settings=settings,
        repository=repository,
        store=store,
        bot=bot,
        state_machine=state_machine,
        group_sync=group_sync,
        caption_workflow=caption_workflow,
        acquirer=acquirer,
        maintenance=maintenance,
        admin=admin,
        ingestor=ingestor,
    )


__all__ = [
    "IngestServices",
    "build_services",
    "create_bot_client",
    "create_completion_client",
    "create_object_store",
]
