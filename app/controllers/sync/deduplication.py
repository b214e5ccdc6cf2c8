import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from app.controllers.sync.models import NormalizedMessage

DedupKey = tuple[int, str, str]


class DuplicateReason(Enum):
    provider_id = "provider_id"
    content_cluster = "content_cluster"


@dataclass
class DuplicateMatch:
    message: NormalizedMessage
    reason: DuplicateReason
    canonical_id: str | None


@dataclass
class ExistingMessageLookup:
    """Stored messages relevant to a batch: known provider ids and dedup keys with their receive times."""

    provider_message_ids: set[str] = field(default_factory=set)
    received_by_key: dict[DedupKey, list[tuple[datetime, str]]] = field(default_factory=dict)


@dataclass
class DedupResult:
    novel: list[NormalizedMessage]
    duplicates: list[DuplicateMatch]


def dedup_key(account_id: int, message: NormalizedMessage) -> DedupKey:
    return account_id, message.from_address.lower(), message.normalized_subject


class Deduplicator:
    """Splits a fetched batch into novel messages and duplicates of stored or in-batch messages."""

    def __init__(self, window_seconds: int) -> None:
        self._logger = logging.getLogger(__name__)
        self._window = timedelta(seconds=window_seconds)

    def dedup(
        self, account_id: int, candidates: list[NormalizedMessage], existing: ExistingMessageLookup
    ) -> DedupResult:
        position = {id(message): index for index, message in enumerate(candidates)}
        ordered = sorted(candidates, key=lambda m: (m.received_at, m.provider_message_id))

        duplicates: list[DuplicateMatch] = []
        remaining: list[NormalizedMessage] = []
        seen_ids = set(existing.provider_message_ids)
        for message in ordered:
            if message.provider_message_id in seen_ids:
                duplicates.append(DuplicateMatch(message, DuplicateReason.provider_id, message.provider_message_id))
                continue
            seen_ids.add(message.provider_message_id)
            remaining.append(message)

        kept_by_key: dict[DedupKey, list[tuple[datetime, str]]] = defaultdict(list)
        for key, stored in existing.received_by_key.items():
            kept_by_key[key].extend(stored)

        novel: list[NormalizedMessage] = []
        for message in remaining:
            if not message.from_address:
                novel.append(message)
                continue

            key = dedup_key(account_id, message)
            canonical = self._find_canonical(message, kept_by_key[key])
            if canonical is not None:
                duplicates.append(DuplicateMatch(message, DuplicateReason.content_cluster, canonical))
                continue
            kept_by_key[key].append((message.received_at, message.provider_message_id))
            novel.append(message)

        if duplicates:
            self._logger.info(
                f"Dropped {len(duplicates)} duplicate(s) out of {len(candidates)} for account {account_id}"
            )

        novel.sort(key=lambda m: position[id(m)])
        return DedupResult(novel=novel, duplicates=duplicates)

    def _find_canonical(self, message: NormalizedMessage, kept: list[tuple[datetime, str]]) -> str | None:
        # Earliest member wins; kept entries are either stored messages or earlier batch members.
        matches = [entry for entry in kept if abs(message.received_at - entry[0]) <= self._window]
        if not matches:
            return None
        return min(matches)[1]
