from datetime import UTC, datetime
from typing import Any

from app.controllers.providers.base import ChannelAdapter, HTTPProviderMixin, require_access_token
from app.controllers.providers.message_utils import MessageUtils
from app.controllers.sync.models import ChannelHandle, FetchResult, NormalizedMessage, ProviderCredentials
from app.exceptions import CheckpointExpiredError, EntityNotFoundError, MalformedPayloadError, NotSupportedError
from app.models import Account, AccountProvider
from settings.settings import ChannelSettings

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
METADATA_HEADERS = ["Message-ID", "In-Reply-To", "References", "Subject", "From", "To", "Cc", "Date"]
INBOX_LABEL = "INBOX"


class GmailAdapter(HTTPProviderMixin, ChannelAdapter):
    """Push-capable adapter over the Gmail REST API; checkpoints are history ids."""

    provider = AccountProvider.gmail

    def __init__(self, channel_settings: ChannelSettings, timeout: int = 30) -> None:
        super().__init__(timeout)
        self._channel_settings = channel_settings

    async def fetch_since(
        self, account: Account, credentials: ProviderCredentials, checkpoint: str | None, limit: int
    ) -> FetchResult:
        access_token = require_access_token(credentials)
        if checkpoint is None:
            return await self._full_fetch(account, access_token, limit)
        return await self._incremental_fetch(account, access_token, checkpoint, limit)

    async def _full_fetch(self, account: Account, access_token: str, limit: int) -> FetchResult:
        # The profile history id is read first so nothing arriving during the listing is skipped.
        profile = await self._request_json("GET", f"{GMAIL_API_URL}/profile", access_token)
        history_id = profile.get("historyId")
        if history_id is None:
            raise MalformedPayloadError(f"Gmail profile for {account.email} has no historyId")

        listing = await self._request_json(
            "GET", f"{GMAIL_API_URL}/messages", access_token, params={"labelIds": INBOX_LABEL, "maxResults": limit}
        )
        message_ids = [item["id"] for item in listing.get("messages", []) if item.get("id")]
        messages = await self._get_messages(account, access_token, message_ids)

        self._logger.info(f"Full Gmail fetch for {account.email}: {len(messages)} messages, history {history_id}")
        return FetchResult(messages=MessageUtils.sort_by_received(messages), checkpoint=str(history_id))

    async def _incremental_fetch(
        self, account: Account, access_token: str, checkpoint: str, limit: int
    ) -> FetchResult:
        try:
            history = await self._request_json(
                "GET",
                f"{GMAIL_API_URL}/history",
                access_token,
                params={"startHistoryId": checkpoint, "historyTypes": "messageAdded", "maxResults": limit},
            )
        except EntityNotFoundError as e:
            raise CheckpointExpiredError(
                f"Gmail history id {checkpoint} is no longer available for {account.email}",
                account=account.email,
                provider=self.provider.value,
            ) from e

        message_ids: list[str] = []
        highest_record_id = int(checkpoint)
        for record in history.get("history", []):
            highest_record_id = max(highest_record_id, int(record.get("id", 0)))
            for added in record.get("messagesAdded", []):
                message = added.get("message", {})
                labels = message.get("labelIds")
                if message.get("id") and (labels is None or INBOX_LABEL in labels):
                    if message["id"] not in message_ids:
                        message_ids.append(message["id"])

        has_more = bool(history.get("nextPageToken"))
        if has_more:
            new_checkpoint = highest_record_id
        else:
            new_checkpoint = max(int(history.get("historyId", checkpoint)), highest_record_id)

        messages = await self._get_messages(account, access_token, message_ids)
        return FetchResult(
            messages=MessageUtils.sort_by_received(messages), checkpoint=str(new_checkpoint), has_more=has_more
        )

    async def _get_messages(self, account: Account, access_token: str, message_ids: list[str]) -> list[NormalizedMessage]:
        params = [("format", "metadata"), *(("metadataHeaders", header) for header in METADATA_HEADERS)]
        messages: list[NormalizedMessage] = []
        for message_id in message_ids:
            try:
                payload = await self._request_json("GET", f"{GMAIL_API_URL}/messages/{message_id}", access_token, params)
                messages.append(self.parse_message(payload))
            except EntityNotFoundError:
                self._logger.info(f"Gmail message {message_id} for {account.email} was deleted before it was fetched")
            except MalformedPayloadError as e:
                self._logger.warning(f"Skipping malformed Gmail message {message_id} for {account.email}: {e}")
        return messages

    @staticmethod
    def parse_message(payload: dict[str, Any]) -> NormalizedMessage:
        message_id = payload.get("id")
        internal_date = payload.get("internalDate")
        if not message_id or internal_date is None:
            raise MalformedPayloadError("Gmail message is missing id or internalDate")

        try:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Invalid internalDate '{internal_date}'") from e

        headers = {
            header.get("name", "").lower(): header.get("value", "")
            for header in payload.get("payload", {}).get("headers", [])
        }
        from_addresses = MessageUtils.parse_addresses(headers.get("from"))
        from_name, from_address = from_addresses[0] if from_addresses else (None, "")

        return NormalizedMessage(
            provider_message_id=message_id,
            provider_thread_id=payload.get("threadId"),
            internet_message_id=MessageUtils.parse_message_id(headers.get("message-id")),
            received_at=received_at,
            subject=headers.get("subject", ""),
            from_address=from_address,
            from_name=from_name,
            to=[address for _, address in MessageUtils.parse_addresses(headers.get("to"))],
            cc=[address for _, address in MessageUtils.parse_addresses(headers.get("cc"))],
            in_reply_to=MessageUtils.parse_message_id(headers.get("in-reply-to")),
            references=MessageUtils.parse_references(headers.get("references")),
            snippet=payload.get("snippet", ""),
            is_read="UNREAD" not in payload.get("labelIds", []),
        )

    async def establish_channel(self, account: Account, credentials: ProviderCredentials) -> ChannelHandle:
        topic = self._channel_settings.gmail_pubsub_topic
        if not topic:
            raise NotSupportedError("GMAIL_PUBSUB_TOPIC is not configured, Gmail push is unavailable")

        response = await self._request_json(
            "POST",
            f"{GMAIL_API_URL}/watch",
            require_access_token(credentials),
            json_body={"topicName": topic, "labelIds": [INBOX_LABEL], "labelFilterBehavior": "include"},
        )
        expiration = response.get("expiration")
        if expiration is None:
            raise MalformedPayloadError(f"Gmail watch response for {account.email} has no expiration")

        expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        self._logger.info(f"Gmail watch registered for {account.email}, expires at {expires_at.isoformat()}")
        return ChannelHandle(
            channel_id=str(account.uuid), expires_at=expires_at, resource_id=str(response.get("historyId", ""))
        )

    async def renew_channel(
        self, account: Account, credentials: ProviderCredentials, handle: ChannelHandle
    ) -> ChannelHandle:
        # Gmail has no lease extension: calling watch again replaces the registration.
        return await self.establish_channel(account, credentials)
