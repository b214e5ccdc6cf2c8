from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .decorators.types import EnumStringType


class SyncStatus(Enum):
    uninitialized = "uninitialized"
    syncing = "syncing"
    synced = "synced"
    error = "error"


class SyncErrorKind(Enum):
    transient = "transient"
    authorization = "authorization"
    stuck = "stuck"
    internal = "internal"


class SyncState(Base, TimestampMixin):
    """Per-account sync cursor, lock and error bookkeeping. Only the sync orchestrator writes it."""

    __tablename__ = "sync_states"

    account_id: Mapped[int] = mapped_column(sa.ForeignKey("accounts.id"), nullable=False, unique=True)
    sync_status: Mapped[SyncStatus] = mapped_column(
        EnumStringType(SyncStatus), nullable=False, default=SyncStatus.uninitialized
    )
    is_processing: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    lock_acquisitions: Mapped[int] = mapped_column(sa.BigInteger, nullable=False, default=0)
    checkpoint: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    last_error_kind: Mapped[SyncErrorKind | None] = mapped_column(EnumStringType(SyncErrorKind), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error_recovery_attempt: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("ix_sync_states_processing", "is_processing", "processing_started_at"),)

    def __repr__(self) -> str:
        return (
            f"<SyncState(account='{self.account_id}', status='{self.sync_status.name}', "
            f"processing={self.is_processing})>"
        )
