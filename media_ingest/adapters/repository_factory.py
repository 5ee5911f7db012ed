"""Factory for creating database repository instances."""

from typing import cast

from media_ingest.adapters.postgres_repository import PostgresRepository
from media_ingest.adapters.sqlite_repository import SQLiteRepository
from media_ingest.config.logging_config import get_logger
from media_ingest.config.settings import Settings
from media_ingest.domain.protocols import MessageRepository
from media_ingest.services.retry import RetryExecutor

logger = get_logger(__name__)


def create_repository(
    settings: Settings, *, retry_executor: RetryExecutor | None = None
) -> MessageRepository:
    """Create the repository selected by ``settings.database_type``.

    Raises:
        ValueError: If database_type is not supported or credentials are missing
        RepositoryError: On connection errors
    """
    if settings.database_type == "sqlite":
        logger.info("repository_sqlite_selected", path=settings.db_path)
        return cast(
            MessageRepository,
            SQLiteRepository(db_path=settings.db_path, retry_executor=retry_executor),
        )

    if settings.database_type == "postgres":
        if not settings.postgres_password:
            raise ValueError(
                "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
            )

        logger.info(
            "repository_postgres_selected",
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
        )
        return cast(
            MessageRepository,
            PostgresRepository(
                host=settings.postgres_host,
                port=settings.postgres_port,
                database=settings.postgres_database,
                user=settings.postgres_user,
                password=settings.postgres_password.get_secret_value(),
                settings=settings,
                retry_executor=retry_executor,
            ),
        )

    raise ValueError(
        f"Unsupported database type: {settings.database_type}. "
        f"Must be 'sqlite' or 'postgres'"
    )
