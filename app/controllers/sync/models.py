from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from app.utils.subjects import normalize_subject


@dataclass
class NormalizedMessage:
    """Provider-neutral message as produced by the adapters, before dedup and threading."""

    provider_message_id: str
    received_at: datetime
    subject: str = ""
    from_address: str = ""
    from_name: str | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    internet_message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    provider_thread_id: str | None = None
    snippet: str = ""
    is_read: bool = False

    @property
    def normalized_subject(self) -> str:
        return normalize_subject(self.subject)

    @property
    def parent_message_id(self) -> str | None:
        if self.in_reply_to:
            return self.in_reply_to
        return self.references[-1] if self.references else None

    @property
    def header_ids(self) -> list[str]:
        """Ancestor ids, nearest first: In-Reply-To, then References from last to first."""
        ids: list[str] = []
        for candidate in [self.in_reply_to, *reversed(self.references)]:
            if candidate and candidate not in ids:
                ids.append(candidate)
        return ids

    @property
    def identifiers(self) -> list[str]:
        """Every id another message may use to reference this one."""
        ids = [self.provider_message_id]
        if self.internet_message_id and self.internet_message_id != self.provider_message_id:
            ids.append(self.internet_message_id)
        return ids

    @property
    def correspondents(self) -> set[str]:
        """From and To addresses, used for participant overlap."""
        addresses = set(self.to)
        if self.from_address:
            addresses.add(self.from_address)
        return addresses

    @property
    def participants(self) -> set[str]:
        return self.correspondents | set(self.cc)


@dataclass
class FetchResult:
    messages: list[NormalizedMessage]
    checkpoint: str | None
    has_more: bool = False


@dataclass
class ChannelHandle:
    channel_id: str
    expires_at: datetime
    resource_id: str | None = None
    client_state: str | None = None


@dataclass
class ProviderCredentials:
    access_token: str | None = None
    username: str | None = None
    password: str | None = None


class SyncTrigger(Enum):
    poll = "poll"
    push = "push"
    manual = "manual"


class SyncResult(Enum):
    completed = "completed"
    failed = "failed"
    skipped_locked = "skipped_locked"
    skipped_backoff = "skipped_backoff"
    skipped_inactive = "skipped_inactive"


@dataclass
class SyncOutcome:
    account_id: int
    trigger: SyncTrigger
    result: SyncResult = SyncResult.completed
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    threads_created: int = 0
    pages: int = 0
    checkpoint: str | None = None
    error: str | None = None
