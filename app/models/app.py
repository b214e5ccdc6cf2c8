import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, WithUUID


class App(Base, WithUUID, TimestampMixin):
    """Tenant that owns accounts, authenticates operator calls and receives new-mail events."""

    __tablename__ = "apps"

    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    webhook_url: Mapped[str | None] = mapped_column(sa.String(500), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<App(name='{self.name}')>"
