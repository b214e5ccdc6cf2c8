import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Sequence
from uuid import UUID

import aiohttp

from app.api.models.messages import MessageData
from app.models import Account, Message, WebhookLog
from app.repos.webhook_log import WebhookLogRepo
from settings.settings import WebhookSettings

MESSAGE_CREATED = "message.created"
SIGNATURE_HEADER = "x-mailsync-signature"


class MailEventPublisher:
    """
    Delivers ``message.created`` events to the owning app's webhook with retry.

    Delivery failures are logged and recorded in ``webhook_logs`` but never raised: sync state
    does not depend on downstream consumers.
    """

    def __init__(self, webhook_log_repo: WebhookLogRepo, webhook_settings: WebhookSettings) -> None:
        self._logger = logging.getLogger(__name__)
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()
        self._webhook_log_repo = webhook_log_repo
        self._settings = webhook_settings

    async def init_session(self) -> None:
        async with self._session_lock:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._settings.timeout))

    async def close_session(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    @staticmethod
    def generate_signature(message_body: str, webhook_secret: str) -> str:
        """HMAC-SHA256 hex digest of the raw body, empty when the app has no secret."""
        if not webhook_secret:
            return ""
        return hmac.new(
            webhook_secret.encode("utf-8"), msg=message_body.encode("utf-8"), digestmod=hashlib.sha256
        ).hexdigest()

    @staticmethod
    def build_payload(account: Account, message: Message, event_id: UUID) -> dict[str, Any]:
        return {
            "specversion": "1.0",
            "type": MESSAGE_CREATED,
            "source": account.provider.value,
            "id": str(event_id),
            "time": int(datetime.now(UTC).timestamp()),
            "webhook_delivery_attempt": 1,
            "data": {
                "application_id": str(account.app.uuid),
                "object": MessageData.from_message(message, str(account.uuid)).model_dump(by_alias=True),
            },
        }

    async def publish_created(self, account: Account, messages: Sequence[Message]) -> int:
        """Send one event per stored message. Returns the number delivered."""
        if not messages:
            return 0
        if not account.app.webhook_url:
            self._logger.debug(f"App {account.app.name} has no webhook url, skipping {len(messages)} events")
            return 0

        delivered = 0
        for message in messages:
            if await self.send_with_retry(account, message):
                delivered += 1
        return delivered

    async def send_with_retry(self, account: Account, message: Message) -> bool:
        """Send a webhook with exponential backoff. Client errors (4xx) are not retried."""
        await self.init_session()
        if not self._http_session:
            self._logger.error("HTTP session not initialized")
            return False

        event_id = uuid.uuid4()
        payload = self.build_payload(account, message, event_id)
        webhook_url = account.app.webhook_url or ""
        max_retries = self._settings.max_retries
        base_delay = 1.0

        for attempt in range(1, max_retries + 1):
            payload["webhook_delivery_attempt"] = attempt
            payload_json = json.dumps(payload)
            headers = {"Content-Type": "application/json"}
            signature = self.generate_signature(payload_json, account.app.webhook_secret or "")
            if signature:
                headers[SIGNATURE_HEADER] = signature

            try:
                async with self._http_session.post(webhook_url, data=payload_json, headers=headers) as response:
                    ok = 200 <= response.status < 300
                    await self._log_delivery(
                        account,
                        message,
                        event_id,
                        status_code=response.status,
                        response_body=None if ok else await response.text(),
                        attempts=attempt,
                        delivered=ok,
                    )
                    if ok:
                        self._logger.info(
                            f"Delivered {MESSAGE_CREATED} for {account.email} message {message.provider_message_id}"
                        )
                        return True

                    self._logger.warning(
                        f"Webhook failed with status {response.status} for {account.email}, "
                        f"message {message.provider_message_id}"
                    )
                    if 400 <= response.status < 500:
                        return False

            except asyncio.TimeoutError:
                self._logger.warning(f"Webhook timeout (attempt {attempt}) for {account.email}")
                await self._log_delivery(account, message, event_id, response_body="Timeout", attempts=attempt)
            except aiohttp.ClientError as e:
                self._logger.warning(f"Webhook error (attempt {attempt}) for {account.email}: {e}")
                await self._log_delivery(account, message, event_id, response_body=str(e), attempts=attempt)

            if attempt < max_retries:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

        self._logger.error(
            f"Webhook delivery failed after {max_retries} attempts for {account.email}, "
            f"message {message.provider_message_id}"
        )
        return False

    async def _log_delivery(
        self,
        account: Account,
        message: Message,
        event_id: UUID,
        status_code: int | None = None,
        response_body: str | None = None,
        attempts: int = 1,
        delivered: bool = False,
    ) -> None:
        try:
            await self._webhook_log_repo.upsert_attempt(
                WebhookLog(
                    uuid=event_id,
                    app_id=account.app_id,
                    account_id=account.id,
                    message_id=message.id,
                    event_type=MESSAGE_CREATED,
                    webhook_url=account.app.webhook_url or "",
                    status_code=status_code,
                    response_body=response_body,
                    attempts=attempts,
                    delivered_at=datetime.now(UTC) if delivered else None,
                )
            )
        except Exception as e:
            self._logger.error(f"Failed to log webhook delivery: {e}")
