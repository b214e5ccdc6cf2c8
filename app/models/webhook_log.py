from datetime import datetime
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, WithUUID

if TYPE_CHECKING:
    from .account import Account


class WebhookLog(Base, WithUUID, TimestampMixin):
    """Delivery attempt of a new-mail event to an app webhook."""

    __tablename__ = "webhook_logs"

    app_id: Mapped[int] = mapped_column(sa.ForeignKey("apps.id"), nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False, index=True)
    message_id: Mapped[int | None] = mapped_column(sa.ForeignKey("messages.id"), nullable=True)
    event_type: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    webhook_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status_code: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, default=1, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    account: Mapped["Account"] = relationship("Account")

    def __repr__(self) -> str:
        return f"<WebhookLog(account='{self.account_id}', event='{self.event_type}', status={self.status_code})>"
