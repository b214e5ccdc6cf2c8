import email
import logging
import re

from aioimaplib import Response

from app.controllers.providers.base import ProviderAdapter
from app.controllers.providers.imap_connection import ConnectionManager
from app.controllers.providers.message_utils import MessageUtils
from app.controllers.sync.models import FetchResult, NormalizedMessage, ProviderCredentials
from app.exceptions import MalformedPayloadError, TransientProviderError
from app.models import Account, AccountProvider

_UIDVALIDITY_RE = re.compile(rb"UIDVALIDITY (\d+)")
_UID_RE = re.compile(rb"UID (\d+)")
DEFAULT_FOLDER = "INBOX"


class IMAPAdapter(ProviderAdapter):
    """Poll-only adapter. Checkpoints are ``"{uidvalidity}:{last_uid}"`` for the configured folder."""

    provider = AccountProvider.imap

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._logger = logging.getLogger(__name__)
        self._connection_manager = connection_manager

    async def fetch_since(
        self, account: Account, credentials: ProviderCredentials, checkpoint: str | None, limit: int
    ) -> FetchResult:
        folder = account.provider_context.get("folder", DEFAULT_FOLDER)
        connection = await self._connection_manager.get_connection(account, credentials)
        try:
            select_response = await connection.select(folder)
            if select_response.result != "OK":
                raise TransientProviderError(f"Failed to select {folder} for {account.email}")
            uid_validity = self.parse_uid_validity(select_response)

            last_uid = self.parse_checkpoint(checkpoint, uid_validity)
            if checkpoint is not None and last_uid == 0:
                self._logger.warning(f"UIDVALIDITY changed for {account.email}:{folder}, starting a full fetch")

            search_response = await connection.uid_search(f"UID {last_uid + 1}:*")
            # "n:*" always matches the highest UID, even when it is below n.
            uids = sorted(uid for uid in self.parse_search_response(search_response) if uid > last_uid)
            if last_uid == 0:
                batch, has_more = uids[-limit:], False
            else:
                batch, has_more = uids[:limit], len(uids) > limit

            if not batch:
                return FetchResult(messages=[], checkpoint=self.format_checkpoint(uid_validity, last_uid))

            fetch_response = await connection.uid("fetch", ",".join(map(str, batch)), "(UID FLAGS BODY.PEEK[HEADER])")
            messages = self._parse_messages(account, folder, uid_validity, fetch_response)
            self._logger.info(f"Fetched {len(messages)} new messages for {account.email}:{folder}")

            return FetchResult(
                messages=MessageUtils.sort_by_received(messages),
                checkpoint=self.format_checkpoint(uid_validity, max(batch)),
                has_more=has_more,
            )
        finally:
            await self._connection_manager.close_connection(connection, account)

    def _parse_messages(
        self, account: Account, folder: str, uid_validity: int, fetch_response: Response
    ) -> list[NormalizedMessage]:
        messages = []
        for uid, (header_bytes, is_read) in self.parse_fetch_response(fetch_response).items():
            try:
                raw_message = email.message_from_bytes(header_bytes)
                provider_message_id = MessageUtils.parse_message_id(raw_message.get("Message-ID"))
                messages.append(
                    MessageUtils.from_headers(
                        raw_message,
                        provider_message_id=provider_message_id or f"{folder}:{uid_validity}:{uid}",
                        is_read=is_read,
                    )
                )
            except MalformedPayloadError as e:
                self._logger.warning(f"Skipping malformed message UID {uid} for {account.email}:{folder}: {e}")
        return messages

    @staticmethod
    def format_checkpoint(uid_validity: int, last_uid: int) -> str:
        return f"{uid_validity}:{last_uid}"

    @staticmethod
    def parse_checkpoint(checkpoint: str | None, uid_validity: int) -> int:
        """Last seen UID, or 0 when there is no checkpoint or the mailbox UIDVALIDITY changed."""
        if not checkpoint:
            return 0
        try:
            stored_validity, last_uid = (int(part) for part in checkpoint.split(":", 1))
        except ValueError:
            return 0
        return last_uid if stored_validity == uid_validity else 0

    @staticmethod
    def parse_uid_validity(select_response: Response) -> int:
        for line in select_response.lines:
            if isinstance(line, (bytes, bytearray)):
                match = _UIDVALIDITY_RE.search(bytes(line))
                if match:
                    return int(match.group(1))
        raise MalformedPayloadError("SELECT response did not include UIDVALIDITY")

    @staticmethod
    def parse_search_response(search_response: Response) -> list[int]:
        uids: list[int] = []
        for line in search_response.lines:
            text = line.decode("utf-8", errors="ignore") if isinstance(line, (bytes, bytearray)) else str(line)
            if "completed" in text.lower() or text.startswith("OK"):
                continue
            uids.extend(int(part) for part in text.split() if part.isdigit())
        return uids

    @staticmethod
    def parse_fetch_response(fetch_response: Response) -> dict[int, tuple[bytes, bool]]:
        """Map UID to (header bytes, seen flag) from a ``UID FETCH (UID FLAGS BODY.PEEK[HEADER])`` response."""
        messages: dict[int, tuple[bytes, bool]] = {}
        lines = fetch_response.lines
        i = 0
        while i < len(lines):
            line = lines[i]
            # Header lines look like b'3 FETCH (UID 12 FLAGS (\\Seen) BODY[HEADER] {342}'
            if isinstance(line, (bytes, bytearray)) and b"FETCH" in line and b"BODY[HEADER]" in line:
                match = _UID_RE.search(bytes(line))
                if match and i + 1 < len(lines) and isinstance(lines[i + 1], (bytes, bytearray)):
                    messages[int(match.group(1))] = (bytes(lines[i + 1]), b"\\Seen" in line)
                    i += 2
                    continue
            i += 1
        return messages
