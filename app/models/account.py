from enum import Enum
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import UniqueConstraint

from .base import Base, TimestampMixin, WithUUID
from .decorators.types import EnumStringType

if TYPE_CHECKING:
    from .app import App


class ProviderKind(Enum):
    push = "push"
    subscription = "subscription"
    poll = "poll"

    @property
    def has_channel(self) -> bool:
        return self is not ProviderKind.poll


class AccountProvider(Enum):
    gmail = "gmail"
    outlook = "outlook"
    imap = "imap"

    @property
    def kind(self) -> ProviderKind:
        return _PROVIDER_KINDS[self]


_PROVIDER_KINDS = {
    AccountProvider.gmail: ProviderKind.push,
    AccountProvider.outlook: ProviderKind.subscription,
    AccountProvider.imap: ProviderKind.poll,
}


class AccountStatus(Enum):
    active = "active"
    inactive = "inactive"
    pending = "pending"


class Account(Base, WithUUID, TimestampMixin):
    """Mailbox registered for synchronization."""

    __tablename__ = "accounts"

    app_id: Mapped[int] = mapped_column(sa.ForeignKey("apps.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    provider: Mapped[AccountProvider] = mapped_column(EnumStringType(AccountProvider), nullable=False)
    credentials: Mapped[str | None] = mapped_column(
        sa.Text, nullable=True, comment="Encrypted IMAP password; OAuth providers use integration_tokens"
    )
    provider_context: Mapped[dict[str, Any]] = mapped_column(JSONB(), nullable=False, server_default=sa.text("'{}'"))
    status: Mapped[AccountStatus] = mapped_column(
        EnumStringType(AccountStatus), nullable=False, server_default=AccountStatus.active.name
    )

    app: Mapped["App"] = relationship("App")

    __table_args__ = (UniqueConstraint("app_id", "email", name="uq_account_app_id_email"),)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.active

    def __repr__(self) -> str:
        return f"<Account(email='{self.email}', provider='{self.provider.name}')>"
