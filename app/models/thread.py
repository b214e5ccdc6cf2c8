from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, WithUUID


class ConversationThread(Base, WithUUID, TimestampMixin):
    """Reconstructed conversation. Never split or deleted once created."""

    __tablename__ = "conversation_threads"

    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False)
    subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    normalized_subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    participants: Mapped[list[str]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'[]'"))
    message_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    first_message_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    last_message_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        sa.Index("ix_conversation_threads_subject", "account_id", "normalized_subject", "last_message_at"),
    )

    def __repr__(self) -> str:
        return f"<ConversationThread(account='{self.account_id}', subject='{self.normalized_subject}')>"
