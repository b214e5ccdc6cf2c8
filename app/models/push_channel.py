from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class PushChannel(Base, TimestampMixin):
    """Gmail watch or Graph subscription registered for an account."""

    __tablename__ = "push_channels"

    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False, unique=True)
    channel_id: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    client_state: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    last_renewed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now

    def __repr__(self) -> str:
        return f"<PushChannel(account='{self.account_id}', channel='{self.channel_id}', active={self.is_active})>"
