from datetime import datetime
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class Message(Base, TimestampMixin):
    """Normalized message. Immutable after insert apart from the read flag."""

    __tablename__ = "messages"

    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False)
    provider_message_id: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    internet_message_id: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    provider_thread_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    thread_id: Mapped[UUID] = mapped_column(
        sa.UUID(as_uuid=True), sa.ForeignKey("conversation_threads.uuid"), nullable=False, index=True
    )

    subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    normalized_subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    in_reply_to: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    reference_ids: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    parent_message_id: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)

    from_address: Mapped[str] = mapped_column(sa.String(320), nullable=False, default="")
    from_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    to_addresses: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    cc_addresses: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    received_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    snippet: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    is_read: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    __table_args__ = (
        sa.UniqueConstraint("account_id", "provider_message_id", name="uq_message_account_provider_id"),
        sa.Index("ix_messages_internet_message_id", "account_id", "internet_message_id"),
        sa.Index("ix_messages_dedup_key", "account_id", "from_address", "normalized_subject", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<Message(account='{self.account_id}', id='{self.provider_message_id}')>"
