"""
Conversation thread reconstruction.

Messages are attached to threads by, in order of precedence:

1. header chain: In-Reply-To / References naming a message the account already has,
2. normalized subject plus participant overlap with a recently active thread,
3. a brand new thread.

Assignments are final. The index is updated after every assignment so a reply can follow its
parent within the same batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

from app.controllers.sync.models import NormalizedMessage


class ThreadRule(Enum):
    header_chain = "header_chain"
    subject_participants = "subject_participants"
    new_thread = "new_thread"


@dataclass
class ThreadSummary:
    thread_id: UUID
    subject: str
    normalized_subject: str
    participants: set[str]
    message_count: int
    first_message_at: datetime
    last_message_at: datetime
    is_new: bool = False
    is_dirty: bool = False


@dataclass
class ThreadAssignment:
    thread_id: UUID
    rule: ThreadRule
    matched_on: str | None = None

    @property
    def created(self) -> bool:
        return self.rule is ThreadRule.new_thread


@dataclass
class AccountThreadIndex:
    """Slice of an account's threads relevant to one batch."""

    message_threads: dict[str, UUID] = field(default_factory=dict)
    threads: dict[UUID, ThreadSummary] = field(default_factory=dict)

    def add_thread(self, summary: ThreadSummary) -> None:
        self.threads.setdefault(summary.thread_id, summary)

    def by_subject(self, normalized_subject: str) -> list[ThreadSummary]:
        return [thread for thread in self.threads.values() if thread.normalized_subject == normalized_subject]

    def attach(self, message: NormalizedMessage, summary: ThreadSummary) -> None:
        if summary.message_count == 0:
            summary.first_message_at = message.received_at
            summary.last_message_at = message.received_at
        else:
            summary.first_message_at = min(summary.first_message_at, message.received_at)
            summary.last_message_at = max(summary.last_message_at, message.received_at)
        summary.message_count += 1
        summary.participants |= message.participants
        summary.is_dirty = True

        self.threads[summary.thread_id] = summary
        for identifier in message.identifiers:
            self.message_threads.setdefault(identifier, summary.thread_id)

    @property
    def changed(self) -> list[ThreadSummary]:
        return [thread for thread in self.threads.values() if thread.is_dirty]


class ThreadReconstructor:
    def __init__(self, recency_window_seconds: int) -> None:
        self._logger = logging.getLogger(__name__)
        self._recency_window = timedelta(seconds=recency_window_seconds)

    def assign_thread(self, message: NormalizedMessage, index: AccountThreadIndex) -> ThreadAssignment:
        assignment = self._match_header_chain(message, index) or self._match_subject(message, index)
        if assignment is None:
            summary = ThreadSummary(
                thread_id=uuid4(),
                subject=message.subject,
                normalized_subject=message.normalized_subject,
                participants=set(),
                message_count=0,
                first_message_at=message.received_at,
                last_message_at=message.received_at,
                is_new=True,
            )
            index.add_thread(summary)
            assignment = ThreadAssignment(summary.thread_id, ThreadRule.new_thread)

        index.attach(message, index.threads[assignment.thread_id])
        self._logger.debug(
            f"Message {message.provider_message_id} assigned to thread {assignment.thread_id} "
            f"by {assignment.rule.value}"
        )
        return assignment

    def _match_header_chain(self, message: NormalizedMessage, index: AccountThreadIndex) -> ThreadAssignment | None:
        for ancestor_id in message.header_ids:
            thread_id = index.message_threads.get(ancestor_id)
            if thread_id is not None and thread_id in index.threads:
                return ThreadAssignment(thread_id, ThreadRule.header_chain, matched_on=ancestor_id)
        return None

    def _match_subject(self, message: NormalizedMessage, index: AccountThreadIndex) -> ThreadAssignment | None:
        normalized_subject = message.normalized_subject
        if not normalized_subject:
            return None

        correspondents = message.correspondents
        candidates = [
            thread
            for thread in index.by_subject(normalized_subject)
            if thread.participants & correspondents
            and message.received_at - thread.last_message_at <= self._recency_window
        ]
        if not candidates:
            return None

        best = max(candidates, key=lambda thread: (thread.last_message_at, str(thread.thread_id)))
        return ThreadAssignment(best.thread_id, ThreadRule.subject_participants, matched_on=normalized_subject)
