import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from app.controllers.providers.base import ChannelAdapter, HTTPProviderMixin, require_access_token
from app.controllers.providers.message_utils import MessageUtils
from app.controllers.sync.models import ChannelHandle, FetchResult, NormalizedMessage, ProviderCredentials
from app.exceptions import EntityNotFoundError, MalformedPayloadError
from app.models import Account, AccountProvider
from settings.settings import ChannelSettings

GRAPH_API_URL = "https://graph.microsoft.com/v1.0"
INBOX_DELTA_URL = f"{GRAPH_API_URL}/me/mailFolders/inbox/messages/delta"
SUBSCRIPTION_RESOURCE = "me/mailFolders('Inbox')/messages"
SELECT_FIELDS = ",".join(
    [
        "id",
        "internetMessageId",
        "conversationId",
        "subject",
        "from",
        "toRecipients",
        "ccRecipients",
        "receivedDateTime",
        "isRead",
        "bodyPreview",
        "internetMessageHeaders",
    ]
)


class OutlookAdapter(HTTPProviderMixin, ChannelAdapter):
    """
    Subscription-capable adapter over Microsoft Graph.

    Checkpoints are Graph delta URLs: a ``@odata.nextLink`` while a round is still paging and the
    ``@odata.deltaLink`` once it is complete.
    """

    provider = AccountProvider.outlook

    def __init__(self, channel_settings: ChannelSettings, timeout: int = 30) -> None:
        super().__init__(timeout)
        self._channel_settings = channel_settings

    async def fetch_since(
        self, account: Account, credentials: ProviderCredentials, checkpoint: str | None, limit: int
    ) -> FetchResult:
        access_token = require_access_token(credentials)
        headers = {"Prefer": f"odata.maxpagesize={limit}"}
        if checkpoint is None:
            page = await self._request_json(
                "GET", INBOX_DELTA_URL, access_token, params={"$select": SELECT_FIELDS}, headers=headers
            )
        else:
            page = await self._request_json("GET", checkpoint, access_token, headers=headers)

        messages: list[NormalizedMessage] = []
        for item in page.get("value", []):
            if "@removed" in item:
                continue
            try:
                messages.append(self.parse_message(item))
            except MalformedPayloadError as e:
                self._logger.warning(f"Skipping malformed Graph message for {account.email}: {e}")

        next_link = page.get("@odata.nextLink")
        delta_link = page.get("@odata.deltaLink")
        if not next_link and not delta_link:
            raise MalformedPayloadError(f"Graph delta page for {account.email} has neither nextLink nor deltaLink")

        return FetchResult(
            messages=MessageUtils.sort_by_received(messages),
            checkpoint=next_link or delta_link,
            has_more=bool(next_link),
        )

    @staticmethod
    def parse_message(item: dict[str, Any]) -> NormalizedMessage:
        message_id = item.get("id")
        received = item.get("receivedDateTime")
        if not message_id or not received:
            raise MalformedPayloadError("Graph message is missing id or receivedDateTime")

        try:
            received_at = MessageUtils.parse_iso_datetime(received)
        except ValueError as e:
            raise MalformedPayloadError(f"Invalid receivedDateTime '{received}'") from e

        headers = {
            header.get("name", "").lower(): header.get("value", "")
            for header in item.get("internetMessageHeaders") or []
        }
        sender = (item.get("from") or {}).get("emailAddress") or {}

        return NormalizedMessage(
            provider_message_id=message_id,
            provider_thread_id=item.get("conversationId"),
            internet_message_id=MessageUtils.parse_message_id(item.get("internetMessageId")),
            received_at=received_at,
            subject=item.get("subject") or "",
            from_address=(sender.get("address") or "").lower(),
            from_name=sender.get("name"),
            to=OutlookAdapter._recipients(item.get("toRecipients")),
            cc=OutlookAdapter._recipients(item.get("ccRecipients")),
            in_reply_to=MessageUtils.parse_message_id(headers.get("in-reply-to")),
            references=MessageUtils.parse_references(headers.get("references")),
            snippet=item.get("bodyPreview") or "",
            is_read=bool(item.get("isRead")),
        )

    @staticmethod
    def _recipients(recipients: list[dict[str, Any]] | None) -> list[str]:
        addresses = []
        for recipient in recipients or []:
            address = (recipient.get("emailAddress") or {}).get("address")
            if address:
                addresses.append(address.lower())
        return addresses

    async def establish_channel(self, account: Account, credentials: ProviderCredentials) -> ChannelHandle:
        client_state = secrets.token_urlsafe(24)
        base_url = self._channel_settings.public_base_url.rstrip("/")
        response = await self._request_json(
            "POST",
            f"{GRAPH_API_URL}/subscriptions",
            require_access_token(credentials),
            json_body={
                "changeType": "created",
                "notificationUrl": f"{base_url}/webhooks/outlook/{account.uuid}",
                "resource": SUBSCRIPTION_RESOURCE,
                "expirationDateTime": self._next_expiration(),
                "clientState": client_state,
            },
        )
        handle = self._handle_from_response(account, response, client_state)
        self._logger.info(f"Graph subscription {handle.channel_id} created for {account.email}")
        return handle

    async def renew_channel(
        self, account: Account, credentials: ProviderCredentials, handle: ChannelHandle
    ) -> ChannelHandle:
        try:
            response = await self._request_json(
                "PATCH",
                f"{GRAPH_API_URL}/subscriptions/{handle.channel_id}",
                require_access_token(credentials),
                json_body={"expirationDateTime": self._next_expiration()},
            )
        except EntityNotFoundError:
            self._logger.warning(
                f"Graph subscription {handle.channel_id} for {account.email} no longer exists, creating a new one"
            )
            return await self.establish_channel(account, credentials)

        return self._handle_from_response(account, response, handle.client_state, fallback_id=handle.channel_id)

    def _next_expiration(self) -> str:
        lifetime = timedelta(seconds=self._channel_settings.outlook_subscription_lifetime)
        return (datetime.now(UTC) + lifetime).isoformat().replace("+00:00", "Z")

    @staticmethod
    def _handle_from_response(
        account: Account, response: dict[str, Any], client_state: str | None, fallback_id: str | None = None
    ) -> ChannelHandle:
        subscription_id = response.get("id") or fallback_id
        expiration = response.get("expirationDateTime")
        if not subscription_id or not expiration:
            raise MalformedPayloadError(f"Graph subscription response for {account.email} is incomplete")
        return ChannelHandle(
            channel_id=subscription_id,
            expires_at=MessageUtils.parse_iso_datetime(expiration),
            resource_id=response.get("resource"),
            client_state=client_state,
        )
