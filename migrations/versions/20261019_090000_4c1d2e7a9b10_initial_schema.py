"""initial_schema

Revision ID: 4c1d2e7a9b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "4c1d2e7a9b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def _uuid() -> sa.Column:
    return sa.Column("uuid", sa.UUID(), server_default=sa.text("uuid_generate_v4()"), nullable=False)


def upgrade() -> None:
    """Upgrade schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    op.create_table(
        "apps",
        sa.Column("id", sa.BigInteger(), nullable=False),
        _uuid(),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("api_key", sa.String(length=255), nullable=False),
        sa.Column("webhook_url", sa.String(length=500), nullable=True),
        sa.Column("webhook_secret", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_key"),
    )
    op.create_index(op.f("ix_apps_uuid"), "apps", ["uuid"], unique=True)

    op.create_table(
        "accounts",
        sa.Column("id", sa.BigInteger(), nullable=False),
        _uuid(),
        *_timestamps(),
        sa.Column("app_id", sa.BigInteger(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column(
            "credentials",
            sa.Text(),
            nullable=True,
            comment="Encrypted IMAP password; OAuth providers use integration_tokens",
        ),
        sa.Column(
            "provider_context", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'"), nullable=False
        ),
        sa.Column("status", sa.String(length=50), server_default="active", nullable=False),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "email", name="uq_account_app_id_email"),
    )
    op.create_index(op.f("ix_accounts_app_id"), "accounts", ["app_id"], unique=False)
    op.create_index(op.f("ix_accounts_uuid"), "accounts", ["uuid"], unique=True)

    op.create_table(
        "sync_states",
        sa.Column("id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("sync_status", sa.String(length=50), nullable=False),
        sa.Column("is_processing", sa.Boolean(), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_acquisitions", sa.BigInteger(), nullable=False),
        sa.Column("checkpoint", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_kind", sa.String(length=50), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_recovery_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
    )
    op.create_index("ix_sync_states_processing", "sync_states", ["is_processing", "processing_started_at"])

    op.create_table(
        "push_channels",
        sa.Column("id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("channel_id", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("client_state", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
    )
    op.create_index(op.f("ix_push_channels_channel_id"), "push_channels", ["channel_id"], unique=False)

    op.create_table(
        "integration_tokens",
        sa.Column("id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("environment", sa.String(length=50), nullable=False),
        sa.Column("client_identity", sa.String(length=255), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_type", sa.String(length=50), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("expires_in", sa.Integer(), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "environment", "client_identity", name="uq_integration_token_identity"),
    )

    op.create_table(
        "conversation_threads",
        sa.Column("id", sa.BigInteger(), nullable=False),
        _uuid(),
        *_timestamps(),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("normalized_subject", sa.Text(), nullable=False),
        sa.Column(
            "participants", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False
        ),
        sa.Column("message_count", sa.Integer(), nullable=False),
        sa.Column("first_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_conversation_threads_uuid"), "conversation_threads", ["uuid"], unique=True)
    op.create_index(
        "ix_conversation_threads_subject",
        "conversation_threads",
        ["account_id", "normalized_subject", "last_message_at"],
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("provider_message_id", sa.String(length=512), nullable=False),
        sa.Column("internet_message_id", sa.String(length=512), nullable=True),
        sa.Column("provider_thread_id", sa.String(length=255), nullable=True),
        sa.Column("thread_id", sa.UUID(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("normalized_subject", sa.Text(), nullable=False),
        sa.Column("in_reply_to", sa.String(length=512), nullable=True),
        sa.Column(
            "reference_ids", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False
        ),
        sa.Column("parent_message_id", sa.String(length=512), nullable=True),
        sa.Column("from_address", sa.String(length=320), nullable=False),
        sa.Column("from_name", sa.String(length=255), nullable=True),
        sa.Column(
            "to_addresses", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False
        ),
        sa.Column(
            "cc_addresses", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'"), nullable=False
        ),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snippet", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["thread_id"], ["conversation_threads.uuid"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "provider_message_id", name="uq_message_account_provider_id"),
    )
    op.create_index(op.f("ix_messages_thread_id"), "messages", ["thread_id"], unique=False)
    op.create_index("ix_messages_internet_message_id", "messages", ["account_id", "internet_message_id"])
    op.create_index(
        "ix_messages_dedup_key", "messages", ["account_id", "from_address", "normalized_subject", "received_at"]
    )

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.BigInteger(), nullable=False),
        _uuid(),
        *_timestamps(),
        sa.Column("app_id", sa.BigInteger(), nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_webhook_logs_uuid"), "webhook_logs", ["uuid"], unique=True)
    op.create_index(op.f("ix_webhook_logs_app_id"), "webhook_logs", ["app_id"], unique=False)
    op.create_index(op.f("ix_webhook_logs_account_id"), "webhook_logs", ["account_id"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("webhook_logs")
    op.drop_table("messages")
    op.drop_table("conversation_threads")
    op.drop_table("integration_tokens")
    op.drop_table("push_channels")
    op.drop_table("sync_states")
    op.drop_table("accounts")
    op.drop_table("apps")
