"""Alembic environment; the PostgreSQL URL comes from application settings."""

from __future__ import annotations

from sqlalchemy import URL, create_engine, pool

from alembic import context
from media_ingest.config.settings import get_settings

config = context.config


def _database_url() -> URL:
    settings = get_settings()
    if settings.postgres_password is None:
        raise RuntimeError("POSTGRES_PASSWORD must be set to run migrations")
    return URL.create(
        "postgresql+psycopg2",
        username=settings.postgres_user,
        password=settings.postgres_password.get_secret_value(),
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
    )


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url().render_as_string(hide_password=False),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
