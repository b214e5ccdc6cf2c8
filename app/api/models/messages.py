"""
Pydantic models for message-related payloads.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models import Message


class EmailAddress(BaseModel):
    name: str | None = None
    email: str


class MessageData(BaseModel):
    """Stored message as delivered in ``message.created`` events."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    object: str = "message"
    grant_id: str
    thread_id: str
    subject: str
    from_: list[EmailAddress] = Field(..., alias="from")
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    date: int
    snippet: str
    unread: bool
    internet_message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)

    @classmethod
    def from_message(cls, message: Message, grant_id: str) -> "MessageData":
        return cls(
            id=message.provider_message_id,
            grant_id=grant_id,
            thread_id=str(message.thread_id),
            subject=message.subject,
            from_=[EmailAddress(name=message.from_name, email=message.from_address)] if message.from_address else [],
            to=[EmailAddress(email=address) for address in message.to_addresses],
            cc=[EmailAddress(email=address) for address in message.cc_addresses],
            date=int(message.received_at.timestamp()),
            snippet=message.snippet,
            unread=not message.is_read,
            internet_message_id=message.internet_message_id,
            in_reply_to=message.in_reply_to,
            references=list(message.reference_ids or []),
        )


class SyncStateData(BaseModel):
    sync_status: str
    is_processing: bool
    checkpoint: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    last_error_at: datetime | None = None
    lock_acquisitions: int = 0


class ChannelStateData(BaseModel):
    channel_id: str
    is_active: bool
    expires_at: datetime
    last_renewed_at: datetime | None = None
    last_error: str | None = None


class SyncStateResponse(BaseModel):
    request_id: str
    account_id: str
    provider: str
    sync_state: SyncStateData | None = None
    channel: ChannelStateData | None = None


class SyncOutcomeData(BaseModel):
    result: str
    trigger: str
    fetched: int
    stored: int
    duplicates: int
    threads_created: int
    pages: int
    error: str | None = None


class SyncOutcomeResponse(BaseModel):
    request_id: str
    data: SyncOutcomeData
