from datetime import datetime

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert

from app.controllers.sync.models import ChannelHandle
from app.models import PushChannel
from app.repos.base import BaseRepo


class PushChannelRepo(BaseRepo[PushChannel]):
    def __init__(self) -> None:
        super().__init__(PushChannel)

    async def get_by_account(self, account_id: int) -> PushChannel | None:
        return await self.one_or_none(self.base_stmt.where(PushChannel.account_id == account_id))

    async def save_handle(self, account_id: int, handle: ChannelHandle, now: datetime) -> None:
        """Record a newly established or renewed channel as active."""
        values = {
            "channel_id": handle.channel_id,
            "resource_id": handle.resource_id,
            "client_state": handle.client_state,
            "expires_at": handle.expires_at,
            "is_active": True,
            "last_renewed_at": now,
            "last_error": None,
        }
        await self.run(
            insert(PushChannel)
            .values(account_id=account_id, **values)
            .on_conflict_do_update(index_elements=["account_id"], set_=values)
        )

    async def mark_inactive(self, account_id: int, error: str) -> None:
        await self.run(
            update(PushChannel)
            .where(PushChannel.account_id == account_id)
            .values(is_active=False, last_error=error)
            .execution_options(synchronize_session=False)
        )
