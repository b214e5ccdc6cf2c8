from typing import Sequence
from uuid import UUID

from sqlalchemy import Row, select
from sqlalchemy.orm import selectinload

from app.models import Account, AccountStatus, PushChannel, SyncState
from app.repos.base import BaseRepo


class AccountRepo(BaseRepo[Account]):
    """Repository for Account model operations."""

    def __init__(self) -> None:
        super().__init__(Account)

    async def get_with_app(self, account_id: int) -> Account | None:
        """Get account by id with its owning app loaded."""
        query = self.base_stmt.where(Account.id == account_id).options(selectinload(Account.app))
        return await self.one_or_none(query)

    async def get_by_uuid(self, uuid: UUID) -> Account | None:
        return await self.one_or_none(self.base_stmt.where(Account.uuid == uuid))

    async def get_by_app_and_uuid(self, app_id: int, uuid: UUID) -> Account | None:
        """Get account by app and uuid."""
        query = self.base_stmt.where(Account.app_id == app_id, Account.uuid == uuid)
        return await self.one_or_none(query)

    async def get_active_sync_candidates(self) -> Sequence[Row[tuple[Account, SyncState | None, PushChannel | None]]]:
        """Active accounts with their sync state and push channel, if any, ordered by id."""
        query = (
            select(Account, SyncState, PushChannel)
            .outerjoin(SyncState, SyncState.account_id == Account.id)
            .outerjoin(PushChannel, PushChannel.account_id == Account.id)
            .where(Account.status == AccountStatus.active)
            .order_by(Account.id)
        )
        result = await self.run(query)
        return result.all()
