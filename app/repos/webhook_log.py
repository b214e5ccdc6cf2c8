from sqlalchemy.dialects.postgresql import insert

from app.models import WebhookLog
from app.repos.base import BaseRepo


class WebhookLogRepo(BaseRepo[WebhookLog]):
    """Repository for WebhookLog model operations."""

    def __init__(self) -> None:
        super().__init__(WebhookLog)

    async def upsert_attempt(self, log: WebhookLog) -> None:
        """Record a delivery attempt; retries of one event update the same row."""
        values = {
            "status_code": log.status_code,
            "response_body": log.response_body,
            "attempts": log.attempts,
            "delivered_at": log.delivered_at,
        }
        await self.run(
            insert(WebhookLog)
            .values(
                uuid=log.uuid,
                app_id=log.app_id,
                account_id=log.account_id,
                message_id=log.message_id,
                event_type=log.event_type,
                webhook_url=log.webhook_url,
                **values,
            )
            .on_conflict_do_update(index_elements=["uuid"], set_=values)
        )
        await self.commit()
