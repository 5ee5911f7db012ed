"""Create messages, audit log and pipeline task tables."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _json_column(name: str, default: str | None) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=default is None,
        server_default=sa.text(f"'{default}'::jsonb") if default is not None else None,
    )


def _timestamp(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("now()"),
    )


def _flag(name: str) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false())


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))


def upgrade() -> None:
    """Create the ingest schema; existing tables are left untouched."""

    bind = op.get_bind()
    inspector = sa.inspect(bind)
    op.execute(sa.text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))

    if not _has_table(inspector, "messages"):
        op.create_table(
            "messages",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("platform_message_id", sa.BigInteger(), nullable=False),
            sa.Column("chat_id", sa.BigInteger(), nullable=False),
            sa.Column("chat_type", sa.String(length=32), nullable=True),
            sa.Column("chat_title", sa.Text(), nullable=True),
            sa.Column("media_group_id", sa.String(length=64), nullable=True),
            _flag("is_original_caption"),
            _flag("group_caption_synced"),
            sa.Column("message_caption_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("caption", sa.Text(), nullable=True),
            _json_column("analyzed_content", None),
            _json_column("old_analyzed_content", "[]"),
            _counter("edit_count"),
            _timestamp("edit_date"),
            sa.Column("file_unique_id", sa.String(length=128), nullable=True),
            sa.Column("file_id", sa.Text(), nullable=True),
            _timestamp("file_id_expires_at"),
            sa.Column("media_kind", sa.String(length=32), nullable=True),
            sa.Column("mime_type", sa.String(length=128), nullable=True),
            sa.Column("file_size", sa.BigInteger(), nullable=True),
            sa.Column("storage_path", sa.Text(), nullable=True),
            sa.Column("public_url", sa.Text(), nullable=True),
            _flag("needs_redownload"),
            sa.Column("redownload_reason", sa.Text(), nullable=True),
            _counter("redownload_attempts"),
            _timestamp("redownload_flagged_at"),
            sa.Column(
                "processing_state",
                sa.String(length=20),
                nullable=False,
                server_default=sa.text("'initialized'"),
            ),
            _timestamp("processing_started_at"),
            _timestamp("processing_completed_at"),
            sa.Column("error_message", sa.Text(), nullable=True),
            _timestamp("last_error_at"),
            _counter("retry_count"),
            sa.Column("correlation_id", sa.String(length=64), nullable=True),
            _flag("deleted_from_telegram"),
            _timestamp("deleted_at"),
            _json_column("telegram_data", "{}"),
            _timestamp("created_at", nullable=False),
            _timestamp("updated_at", nullable=False),
            sa.CheckConstraint(
                "processing_state IN ('initialized', 'pending', 'processing', "
                "'completed', 'partial_success', 'error', 'deleted')",
                name="messages_processing_state_check",
            ),
        )
        op.create_index(
            "ux_messages_chat_message",
            "messages",
            ["chat_id", "platform_message_id"],
            unique=True,
            postgresql_where=sa.text("processing_state != 'deleted'"),
        )
        op.create_index("ix_messages_group", "messages", ["media_group_id", "created_at"])
        op.create_index(
            "ix_messages_state", "messages", ["processing_state", "processing_started_at"]
        )
        op.create_index("ix_messages_file_unique_id", "messages", ["file_unique_id"])

    if not _has_table(inspector, "audit_log"):
        op.create_table(
            "audit_log",
            sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("correlation_id", sa.String(length=64), nullable=True),
            _json_column("metadata", "{}"),
            sa.Column("error_message", sa.Text(), nullable=True),
            _timestamp("created_at", nullable=False),
        )
        op.create_index("ix_audit_log_entity", "audit_log", ["entity_id", "created_at"])

    if not _has_table(inspector, "pipeline_tasks"):
        op.create_table(
            "pipeline_tasks",
            sa.Column(
                "task_id",
                postgresql.UUID(as_uuid=True),
                primary_key=True,
                server_default=sa.text("gen_random_uuid()"),
            ),
            sa.Column("task_type", sa.String(length=100), nullable=False),
            _json_column("payload", "{}"),
            sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("50")),
            _timestamp("run_at", nullable=False),
            sa.Column(
                "status",
                sa.String(length=20),
                nullable=False,
                server_default=sa.text("'queued'"),
            ),
            _counter("attempts"),
            sa.Column(
                "max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")
            ),
            sa.Column("idempotency_key", sa.String(length=255), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            _timestamp("locked_at"),
            _timestamp("created_at", nullable=False),
            _timestamp("updated_at", nullable=False),
            sa.CheckConstraint("attempts >= 0", name="pipeline_tasks_attempts_check"),
            sa.CheckConstraint(
                "max_attempts > 0", name="pipeline_tasks_max_attempts_check"
            ),
            sa.CheckConstraint(
                "status IN ('queued', 'in_progress', 'done', 'failed')",
                name="pipeline_tasks_status_check",
            ),
        )
        op.create_index(
            "pipeline_tasks_idempotency_key_idx",
            "pipeline_tasks",
            ["idempotency_key"],
            unique=True,
        )
        op.create_index(
            "pipeline_tasks_status_run_at_idx",
            "pipeline_tasks",
            ["status", "task_type", "run_at"],
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if _has_table(inspector, "pipeline_tasks"):
        op.drop_index("pipeline_tasks_status_run_at_idx", table_name="pipeline_tasks")
        op.drop_index("pipeline_tasks_idempotency_key_idx", table_name="pipeline_tasks")
        op.drop_table("pipeline_tasks")
    if _has_table(inspector, "audit_log"):
        op.drop_index("ix_audit_log_entity", table_name="audit_log")
        op.drop_table("audit_log")
    if _has_table(inspector, "messages"):
        for index in (
            "ix_messages_file_unique_id",
            "ix_messages_state",
            "ix_messages_group",
            "ux_messages_chat_message",
        ):
            op.drop_index(index, table_name="messages")
        op.drop_table("messages")
