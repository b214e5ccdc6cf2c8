from datetime import UTC, datetime

import pytest
from aioimaplib import Response

from app.controllers.providers.imap import IMAPAdapter
from app.controllers.sync.models import ProviderCredentials
from app.exceptions import MalformedPayloadError, TransientProviderError
from app.models import Account

CREDENTIALS = ProviderCredentials(username="carol@mail.test", password="hunter2")


def headers(uid: int, message_id: bool = True) -> bytes:
    lines = [
        f"Date: Mon, 6 May 2024 {uid:02d}:00:00 +0000",
        "From: Dave <dave@example.com>",
        "To: carol@mail.test",
        f"Subject: Update {uid}",
    ]
    if message_id:
        lines.insert(0, f"Message-ID: <uid-{uid}@example.com>")
    return ("\r\n".join(lines) + "\r\n\r\n").encode()


class FakeConnection:
    def __init__(
        self, uid_validity: int, mailbox: dict[int, bytes], seen: frozenset[int] = frozenset(), select_result: str = "OK"
    ) -> None:
        self.uid_validity = uid_validity
        self.mailbox = mailbox
        self.seen = seen
        self.select_result = select_result
        self.searches: list[str] = []
        self.fetched: list[str] = []

    async def select(self, folder: str) -> Response:
        return Response(
            self.select_result,
            [b"3 EXISTS", f"OK [UIDVALIDITY {self.uid_validity}] UIDs valid".encode(), b"Select completed."],
        )

    async def uid_search(self, criteria: str) -> Response:
        self.searches.append(criteria)
        first = int(criteria.split()[1].split(":")[0])
        # Servers answer "n:*" with the highest UID even when it is below n.
        matching = [uid for uid in sorted(self.mailbox) if uid >= first] or [max(self.mailbox)]
        return Response("OK", [" ".join(map(str, matching)).encode(), b"Search completed (0.001 secs)."])

    async def uid(self, command: str, uid_set: str, fields: str) -> Response:
        self.fetched.append(uid_set)
        lines: list[bytes | bytearray] = []
        for position, uid in enumerate((int(part) for part in uid_set.split(",")), start=1):
            flags = "\\Seen" if uid in self.seen else ""
            body = self.mailbox[uid]
            lines.append(f"{position} FETCH (UID {uid} FLAGS ({flags}) BODY[HEADER] {{{len(body)}}}".encode())
            lines.append(bytearray(body))
            lines.append(b")")
        lines.append(b"Fetch completed.")
        return Response("OK", lines)


class FakeConnectionManager:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.closed = 0

    async def get_connection(self, account: Account, credentials: ProviderCredentials) -> FakeConnection:
        return self.connection

    async def close_connection(self, connection: FakeConnection, account: Account) -> None:
        self.closed += 1


def adapter_for(connection: FakeConnection) -> tuple[IMAPAdapter, FakeConnectionManager]:
    manager = FakeConnectionManager(connection)
    return IMAPAdapter(manager), manager  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "checkpoint,expected",
    [(None, 0), ("42:10", 10), ("41:10", 0), ("garbage", 0), ("42:", 0)],
)
def test_parse_checkpoint(checkpoint: str | None, expected: int) -> None:
    assert IMAPAdapter.parse_checkpoint(checkpoint, uid_validity=42) == expected


def test_select_without_uidvalidity_is_malformed() -> None:
    with pytest.raises(MalformedPayloadError):
        IMAPAdapter.parse_uid_validity(Response("OK", [b"3 EXISTS", b"Select completed."]))


def test_search_response_ignores_status_line() -> None:
    response = Response("OK", [b"4 8 15", b"Search completed (0.001 secs)."])

    assert IMAPAdapter.parse_search_response(response) == [4, 8, 15]


async def test_full_fetch_takes_latest_messages(imap_account: Account) -> None:
    connection = FakeConnection(42, {5: headers(5), 7: headers(7), 9: headers(9)}, seen=frozenset({7}))
    adapter, manager = adapter_for(connection)

    result = await adapter.fetch_since(imap_account, CREDENTIALS, None, limit=2)

    assert connection.searches == ["UID 1:*"]
    assert connection.fetched == ["7,9"]
    assert [m.provider_message_id for m in result.messages] == ["<uid-7@example.com>", "<uid-9@example.com>"]
    assert result.messages[0].received_at == datetime(2024, 5, 6, 7, tzinfo=UTC)
    assert result.messages[0].is_read and not result.messages[1].is_read
    assert result.checkpoint == "42:9"
    assert not result.has_more
    assert manager.closed == 1


async def test_incremental_fetch_pages_oldest_first(imap_account: Account) -> None:
    connection = FakeConnection(42, {5: headers(5), 7: headers(7), 9: headers(9)})
    adapter, _ = adapter_for(connection)

    result = await adapter.fetch_since(imap_account, CREDENTIALS, "42:5", limit=1)

    assert connection.searches == ["UID 6:*"]
    assert [m.provider_message_id for m in result.messages] == ["<uid-7@example.com>"]
    assert result.checkpoint == "42:7"
    assert result.has_more


async def test_no_new_messages_keeps_checkpoint(imap_account: Account) -> None:
    connection = FakeConnection(42, {5: headers(5), 9: headers(9)})
    adapter, manager = adapter_for(connection)

    result = await adapter.fetch_since(imap_account, CREDENTIALS, "42:9", limit=10)

    assert result.messages == []
    assert result.checkpoint == "42:9"
    assert connection.fetched == []
    assert manager.closed == 1


async def test_uidvalidity_change_restarts_from_scratch(imap_account: Account) -> None:
    connection = FakeConnection(43, {2: headers(2), 3: headers(3)})
    adapter, _ = adapter_for(connection)

    result = await adapter.fetch_since(imap_account, CREDENTIALS, "42:100", limit=10)

    assert connection.searches == ["UID 1:*"]
    assert len(result.messages) == 2
    assert result.checkpoint == "43:3"


async def test_message_without_message_id_gets_mailbox_id(imap_account: Account) -> None:
    connection = FakeConnection(42, {4: headers(4, message_id=False)})
    adapter, _ = adapter_for(connection)

    result = await adapter.fetch_since(imap_account, CREDENTIALS, None, limit=10)

    assert result.messages[0].provider_message_id == "INBOX:42:4"
    assert result.messages[0].internet_message_id is None


async def test_failed_select_is_transient_and_closes_connection(imap_account: Account) -> None:
    connection = FakeConnection(42, {1: headers(1)}, select_result="NO")
    adapter, manager = adapter_for(connection)

    with pytest.raises(TransientProviderError):
        await adapter.fetch_since(imap_account, CREDENTIALS, None, limit=10)
    assert manager.closed == 1
