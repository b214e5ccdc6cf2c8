import logging
import re
from datetime import UTC, datetime
from email.header import decode_header, make_header
from email.message import Message as PythonEmailMessage
from email.utils import getaddresses, parsedate_to_datetime
from typing import Iterable

from app.controllers.sync.models import NormalizedMessage
from app.exceptions import MalformedPayloadError

logger = logging.getLogger(__name__)

_MESSAGE_ID_RE = re.compile(r"<[^<>\s]+>")
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class MessageUtils:
    """Helpers shared by the provider adapters to build NormalizedMessage instances."""

    @staticmethod
    def from_headers(
        msg: PythonEmailMessage,
        provider_message_id: str | None = None,
        received_at: datetime | None = None,
        is_read: bool = False,
    ) -> NormalizedMessage:
        """Build a NormalizedMessage from RFC 5322 headers (IMAP header fetches)."""
        internet_message_id = MessageUtils.parse_message_id(msg.get("Message-ID"))
        message_id = provider_message_id or internet_message_id
        if not message_id:
            raise MalformedPayloadError("Message has neither a provider id nor a Message-ID header")

        from_addresses = MessageUtils.parse_addresses(MessageUtils.decode(msg.get("From")))
        from_name, from_address = from_addresses[0] if from_addresses else (None, "")

        return NormalizedMessage(
            provider_message_id=message_id,
            internet_message_id=internet_message_id,
            received_at=received_at or MessageUtils.parse_date(msg.get("Date")),
            subject=MessageUtils.decode(msg.get("Subject")),
            from_address=from_address,
            from_name=from_name,
            to=[address for _, address in MessageUtils.parse_addresses(MessageUtils.decode(msg.get("To")))],
            cc=[address for _, address in MessageUtils.parse_addresses(MessageUtils.decode(msg.get("Cc")))],
            in_reply_to=MessageUtils.parse_message_id(msg.get("In-Reply-To")),
            references=MessageUtils.parse_references(msg.get("References")),
            is_read=is_read,
        )

    @staticmethod
    def decode(value: object) -> str:
        """Decode RFC 2047 encoded words; header values may be str or email.header.Header."""
        if value is None:
            return ""
        try:
            return str(make_header(decode_header(str(value))))
        except Exception:
            return str(value)

    @staticmethod
    def parse_addresses(address_string: str | None) -> list[tuple[str | None, str]]:
        """Parse an address header into (display name, lowercase address) pairs."""
        if not address_string:
            return []

        try:
            return [(name or None, address.lower()) for name, address in getaddresses([address_string]) if address]
        except Exception:
            logger.exception(f"Failed to parse addresses '{address_string}'")
            return []

    @staticmethod
    def parse_message_id(value: object) -> str | None:
        if not value:
            return None
        match = _MESSAGE_ID_RE.search(str(value))
        if match:
            return match.group(0)
        stripped = str(value).strip()
        return f"<{stripped}>" if stripped else None

    @staticmethod
    def parse_references(value: object) -> list[str]:
        """Referenced Message-IDs in header order, including angle brackets."""
        if not value:
            return []
        references: list[str] = []
        for reference in _MESSAGE_ID_RE.findall(str(value)):
            if reference not in references:
                references.append(reference)
        return references

    @staticmethod
    def parse_date(value: object) -> datetime:
        if value:
            try:
                parsed = parsedate_to_datetime(str(value))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                return parsed
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header '{value}', using current time")
        return datetime.now(UTC)

    @staticmethod
    def parse_iso_datetime(value: str) -> datetime:
        """Parse ISO 8601 timestamps such as Graph's '2024-05-01T10:00:00.1234567Z'."""
        normalized = _FRACTION_RE.sub(r"\1", value.strip().replace("Z", "+00:00"))
        parsed = datetime.fromisoformat(normalized)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @staticmethod
    def sort_by_received(messages: Iterable[NormalizedMessage]) -> list[NormalizedMessage]:
        return sorted(messages, key=lambda message: message.received_at)
