from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .account import AccountProvider
from .base import Base, TimestampMixin
from .decorators.types import EnumStringType


class IntegrationToken(Base, TimestampMixin):
    """OAuth grant for one (provider, environment, client identity). Token columns are Fernet encrypted."""

    __tablename__ = "integration_tokens"

    provider: Mapped[AccountProvider] = mapped_column(EnumStringType(AccountProvider), nullable=False)
    environment: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    client_identity: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    access_token: Mapped[str] = mapped_column(sa.Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    token_type: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)
    scope: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    expires_in: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("provider", "environment", "client_identity", name="uq_integration_token_identity"),
    )

    @property
    def expires_at(self) -> datetime:
        return self.generated_at + timedelta(seconds=self.expires_in)

    def __repr__(self) -> str:
        return (
            f"<IntegrationToken(provider='{self.provider.name}', environment='{self.environment}', "
            f"client='{self.client_identity}')>"
        )
