from collections import defaultdict
from datetime import timedelta
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import or_, select, tuple_
from sqlalchemy.dialects.postgresql import insert

from app.controllers.sync.deduplication import ExistingMessageLookup
from app.controllers.sync.models import NormalizedMessage
from app.models import Message
from app.repos.base import BaseRepo


class MessageRepo(BaseRepo[Message]):
    """Canonical message store. Inserts are idempotent on (account_id, provider_message_id)."""

    def __init__(self) -> None:
        super().__init__(Message)

    async def get_by_provider_id(self, account_id: int, provider_message_id: str) -> Message | None:
        return await self.one_or_none(
            self.base_stmt.where(Message.account_id == account_id, Message.provider_message_id == provider_message_id)
        )

    async def get_by_ids(self, account_id: int, ids: Iterable[int]) -> Sequence[Message]:
        return await self.all(
            self.base_stmt.where(Message.account_id == account_id, Message.id.in_(list(ids))).order_by(Message.id)
        )

    async def get_existing_lookup(
        self, account_id: int, candidates: Sequence[NormalizedMessage], window: timedelta
    ) -> ExistingMessageLookup:
        """Stored messages a batch could duplicate, by provider id or by dedup key within ``window``."""
        lookup = ExistingMessageLookup()
        if not candidates:
            return lookup

        provider_ids = [message.provider_message_id for message in candidates]
        id_rows = await self.run(
            select(Message.provider_message_id).where(
                Message.account_id == account_id, Message.provider_message_id.in_(provider_ids)
            )
        )
        lookup.provider_message_ids = set(id_rows.scalars().all())

        keys = {(m.from_address.lower(), m.normalized_subject) for m in candidates if m.from_address}
        if not keys:
            return lookup

        earliest = min(m.received_at for m in candidates) - window
        latest = max(m.received_at for m in candidates) + window
        key_rows = await self.run(
            select(Message.from_address, Message.normalized_subject, Message.received_at, Message.provider_message_id)
            .where(
                Message.account_id == account_id,
                tuple_(Message.from_address, Message.normalized_subject).in_(list(keys)),
                Message.received_at.between(earliest, latest),
            )
        )
        received_by_key: dict[tuple[int, str, str], list] = defaultdict(list)
        for from_address, normalized_subject, received_at, provider_message_id in key_rows.all():
            received_by_key[(account_id, from_address, normalized_subject)].append((received_at, provider_message_id))
        lookup.received_by_key = dict(received_by_key)
        return lookup

    async def get_thread_ids_for(self, account_id: int, identifiers: Iterable[str]) -> dict[str, UUID]:
        """Map provider or RFC Message-IDs already stored for the account to their thread."""
        identifiers = list(set(identifiers))
        if not identifiers:
            return {}

        rows = await self.run(
            select(Message.provider_message_id, Message.internet_message_id, Message.thread_id).where(
                Message.account_id == account_id,
                or_(Message.provider_message_id.in_(identifiers), Message.internet_message_id.in_(identifiers)),
            )
        )
        thread_ids: dict[str, UUID] = {}
        for provider_message_id, internet_message_id, thread_id in rows.all():
            thread_ids.setdefault(provider_message_id, thread_id)
            if internet_message_id:
                thread_ids.setdefault(internet_message_id, thread_id)
        return thread_ids

    async def insert_many(
        self, account_id: int, assignments: Sequence[tuple[NormalizedMessage, UUID]]
    ) -> list[Message]:
        """Insert messages, skipping any provider id already stored. Returns the rows actually inserted."""
        if not assignments:
            return []

        rows = [
            {
                "account_id": account_id,
                "provider_message_id": message.provider_message_id,
                "internet_message_id": message.internet_message_id,
                "provider_thread_id": message.provider_thread_id,
                "thread_id": thread_id,
                "subject": message.subject,
                "normalized_subject": message.normalized_subject,
                "in_reply_to": message.in_reply_to,
                "reference_ids": message.references,
                "parent_message_id": message.parent_message_id,
                "from_address": message.from_address,
                "from_name": message.from_name,
                "to_addresses": message.to,
                "cc_addresses": message.cc,
                "received_at": message.received_at,
                "snippet": message.snippet,
                "is_read": message.is_read,
            }
            for message, thread_id in assignments
        ]
        result = await self.run(
            insert(Message)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["account_id", "provider_message_id"])
            .returning(Message)
        )
        return list(result.scalars().all())
