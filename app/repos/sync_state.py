from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import case, update
from sqlalchemy.dialects.postgresql import insert

from app.exceptions import EntityNotFoundError
from app.models import SyncErrorKind, SyncState, SyncStatus
from app.repos.base import BaseRepo


class SyncStateRepo(BaseRepo[SyncState]):
    """
    Repository for SyncState.

    The processing lock is only taken and released with conditional UPDATE statements so two
    workers can never both observe ``is_processing = false`` and proceed.
    """

    def __init__(self) -> None:
        super().__init__(SyncState)

    async def get_by_account(self, account_id: int) -> SyncState | None:
        return await self.one_or_none(self.base_stmt.where(SyncState.account_id == account_id))

    async def get_or_create(self, account_id: int) -> SyncState:
        """Get the account's sync state, inserting an uninitialized row on first use."""
        await self.run(
            insert(SyncState)
            .values(account_id=account_id, sync_status=SyncStatus.uninitialized, is_processing=False)
            .on_conflict_do_nothing(index_elements=["account_id"])
        )
        state = await self.get_by_account(account_id)
        if state is None:
            raise EntityNotFoundError(f"Sync state for account {account_id} not found")
        return state

    async def try_acquire(self, account_id: int, now: datetime) -> SyncState | None:
        """Compare-and-set ``is_processing`` from false to true. Returns None when already held."""
        stmt = (
            update(SyncState)
            .where(SyncState.account_id == account_id, SyncState.is_processing.is_(False))
            .values(
                is_processing=True,
                processing_started_at=now,
                sync_status=SyncStatus.syncing,
                lock_acquisitions=SyncState.lock_acquisitions + 1,
                last_error_recovery_attempt=case(
                    (SyncState.sync_status == SyncStatus.error, now),
                    else_=SyncState.last_error_recovery_attempt,
                ),
            )
            .returning(SyncState)
            .execution_options(populate_existing=True)
        )
        result = await self.run(stmt)
        state = result.scalars().one_or_none()
        await self.commit()
        return state

    async def save_checkpoint(self, account_id: int, lease: datetime, checkpoint: str | None) -> bool:
        """
        Record the checkpoint a page advances to, provided the pass started at ``lease`` still
        holds the lock. A None checkpoint keeps the stored one but still checks the lock.
        """
        return await self._update_held(
            account_id, lease, checkpoint=SyncState.checkpoint if checkpoint is None else checkpoint
        )

    async def mark_synced(self, account_id: int, lease: datetime, now: datetime) -> bool:
        """Release the lock after a successful pass. False if the lock was reset and taken by another pass."""
        return await self._update_held(
            account_id,
            lease,
            sync_status=SyncStatus.synced,
            is_processing=False,
            processing_started_at=None,
            last_sync_at=now,
            last_error=None,
            last_error_kind=None,
            last_error_at=None,
        )

    async def mark_error(
        self, account_id: int, lease: datetime, error: str, kind: SyncErrorKind, now: datetime
    ) -> bool:
        """Release the lock after a failed pass. The checkpoint is left untouched."""
        return await self._update_held(
            account_id,
            lease,
            sync_status=SyncStatus.error,
            is_processing=False,
            processing_started_at=None,
            last_error=error,
            last_error_kind=kind,
            last_error_at=now,
        )

    async def get_stuck(self, started_before: datetime) -> Sequence[SyncState]:
        return await self.all(
            self.base_stmt.where(
                SyncState.is_processing.is_(True), SyncState.processing_started_at < started_before
            ).order_by(SyncState.account_id)
        )

    async def force_release_stuck(self, account_id: int, started_before: datetime, error: str, now: datetime) -> bool:
        """Reset a lock held since before ``started_before``. False if it was released meanwhile."""
        stmt = (
            update(SyncState)
            .where(
                SyncState.account_id == account_id,
                SyncState.is_processing.is_(True),
                SyncState.processing_started_at < started_before,
            )
            .values(
                is_processing=False,
                processing_started_at=None,
                sync_status=SyncStatus.error,
                last_error=error,
                last_error_kind=SyncErrorKind.stuck,
                last_error_at=now,
            )
            .returning(SyncState.id)
        )
        result = await self.run(stmt)
        released = result.scalar_one_or_none() is not None
        await self.commit()
        return released

    async def _update_held(self, account_id: int, lease: datetime, **values: Any) -> bool:
        # A lock reset by maintenance and re-acquired carries a new processing_started_at.
        result = await self.run(
            update(SyncState)
            .where(
                SyncState.account_id == account_id,
                SyncState.is_processing.is_(True),
                SyncState.processing_started_at == lease,
            )
            .values(**values)
            .returning(SyncState.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None
