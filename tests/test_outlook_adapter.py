from datetime import UTC, datetime
from typing import Any

import pytest

from app.controllers.providers.outlook import GRAPH_API_URL, INBOX_DELTA_URL, OutlookAdapter
from app.controllers.sync.models import ChannelHandle, ProviderCredentials
from app.exceptions import EntityNotFoundError, MalformedPayloadError
from app.models import Account
from settings.settings import ChannelSettings

CREDENTIALS = ProviderCredentials(access_token="token")
NEXT_LINK = f"{INBOX_DELTA_URL}?$skiptoken=page-2"
DELTA_LINK = f"{INBOX_DELTA_URL}?$deltatoken=round-1"


def graph_message(message_id: str, received: str, **fields: Any) -> dict[str, Any]:
    item = {
        "id": message_id,
        "internetMessageId": f"<{message_id}@contoso.com>",
        "conversationId": "conv-1",
        "subject": "RE: Budget",
        "from": {"emailAddress": {"name": "Eve", "address": "Eve@Contoso.com"}},
        "toRecipients": [{"emailAddress": {"address": "bob@contoso.com"}}],
        "ccRecipients": [],
        "receivedDateTime": received,
        "isRead": False,
        "bodyPreview": "Numbers attached",
    }
    item.update(fields)
    return item


class FakeGraphApi:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def __call__(
        self,
        method: str,
        url: str,
        access_token: str,
        params: Any = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.requests.append({"method": method, "url": url, "params": params, "json": json_body, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def adapter_with(monkeypatch: pytest.MonkeyPatch, *responses: Any) -> tuple[OutlookAdapter, FakeGraphApi]:
    adapter = OutlookAdapter(ChannelSettings(public_base_url="https://sync.example.com/"))
    api = FakeGraphApi(*responses)
    monkeypatch.setattr(adapter, "_request_json", api)
    return adapter, api


def test_parse_message_reads_threading_headers() -> None:
    item = graph_message(
        "AAMk1",
        "2024-05-06T10:00:00.1234567Z",
        internetMessageHeaders=[
            {"name": "In-Reply-To", "value": "<root@contoso.com>"},
            {"name": "References", "value": "<root@contoso.com>"},
        ],
    )

    message = OutlookAdapter.parse_message(item)

    assert message.received_at == datetime(2024, 5, 6, 10, 0, 0, 123456, tzinfo=UTC)
    assert message.internet_message_id == "<AAMk1@contoso.com>"
    assert message.provider_thread_id == "conv-1"
    assert (message.from_name, message.from_address) == ("Eve", "eve@contoso.com")
    assert message.to == ["bob@contoso.com"]
    assert message.in_reply_to == "<root@contoso.com>"
    assert message.references == ["<root@contoso.com>"]
    assert message.normalized_subject == "budget"


def test_parse_message_without_received_time_is_malformed() -> None:
    with pytest.raises(MalformedPayloadError):
        OutlookAdapter.parse_message({"id": "AAMk1"})


async def test_initial_delta_page_checkpoints_next_link(
    monkeypatch: pytest.MonkeyPatch, outlook_account: Account
) -> None:
    adapter, api = adapter_with(
        monkeypatch,
        {
            "value": [
                graph_message("late", "2024-05-06T11:00:00Z"),
                {"id": "gone", "@removed": {"reason": "deleted"}},
                graph_message("early", "2024-05-06T09:00:00Z"),
            ],
            "@odata.nextLink": NEXT_LINK,
        },
    )

    result = await adapter.fetch_since(outlook_account, CREDENTIALS, None, limit=20)

    assert [m.provider_message_id for m in result.messages] == ["early", "late"]
    assert result.checkpoint == NEXT_LINK
    assert result.has_more
    assert api.requests[0]["url"] == INBOX_DELTA_URL
    assert api.requests[0]["headers"] == {"Prefer": "odata.maxpagesize=20"}


async def test_incremental_fetch_resumes_from_checkpoint_url(
    monkeypatch: pytest.MonkeyPatch, outlook_account: Account
) -> None:
    adapter, api = adapter_with(monkeypatch, {"value": [], "@odata.deltaLink": DELTA_LINK})

    result = await adapter.fetch_since(outlook_account, CREDENTIALS, NEXT_LINK, limit=20)

    assert result.messages == []
    assert result.checkpoint == DELTA_LINK
    assert not result.has_more
    assert api.requests[0]["url"] == NEXT_LINK


async def test_delta_page_without_links_is_malformed(
    monkeypatch: pytest.MonkeyPatch, outlook_account: Account
) -> None:
    adapter, _ = adapter_with(monkeypatch, {"value": []})

    with pytest.raises(MalformedPayloadError):
        await adapter.fetch_since(outlook_account, CREDENTIALS, DELTA_LINK, limit=20)


async def test_subscription_targets_account_webhook(monkeypatch: pytest.MonkeyPatch, outlook_account: Account) -> None:
    adapter, api = adapter_with(
        monkeypatch, {"id": "sub-9", "expirationDateTime": "2024-05-09T10:00:00Z", "resource": "me/messages"}
    )

    handle = await adapter.establish_channel(outlook_account, CREDENTIALS)

    body = api.requests[0]["json"]
    assert api.requests[0]["url"] == f"{GRAPH_API_URL}/subscriptions"
    assert body["notificationUrl"] == f"https://sync.example.com/webhooks/outlook/{outlook_account.uuid}"
    assert body["changeType"] == "created"
    assert handle.channel_id == "sub-9"
    assert handle.client_state == body["clientState"]
    assert handle.expires_at == datetime(2024, 5, 9, 10, 0, tzinfo=UTC)


async def test_renewal_extends_existing_subscription(
    monkeypatch: pytest.MonkeyPatch, outlook_account: Account
) -> None:
    adapter, api = adapter_with(monkeypatch, {"expirationDateTime": "2024-05-10T10:00:00Z"})
    current = ChannelHandle("sub-9", datetime(2024, 5, 9, tzinfo=UTC), client_state="s3cret")

    handle = await adapter.renew_channel(outlook_account, CREDENTIALS, current)

    assert api.requests[0]["method"] == "PATCH"
    assert api.requests[0]["url"] == f"{GRAPH_API_URL}/subscriptions/sub-9"
    assert (handle.channel_id, handle.client_state) == ("sub-9", "s3cret")
    assert handle.expires_at == datetime(2024, 5, 10, 10, 0, tzinfo=UTC)


async def test_renewal_of_missing_subscription_creates_new_one(
    monkeypatch: pytest.MonkeyPatch, outlook_account: Account
) -> None:
    adapter, api = adapter_with(
        monkeypatch,
        EntityNotFoundError("HTTP 404"),
        {"id": "sub-10", "expirationDateTime": "2024-05-10T10:00:00Z"},
    )
    current = ChannelHandle("sub-9", datetime(2024, 5, 9, tzinfo=UTC), client_state="s3cret")

    handle = await adapter.renew_channel(outlook_account, CREDENTIALS, current)

    assert [request["method"] for request in api.requests] == ["PATCH", "POST"]
    assert handle.channel_id == "sub-10"
    assert handle.client_state != "s3cret"
