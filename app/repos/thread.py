from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert

from app.controllers.sync.reconstruction import ThreadSummary
from app.models import ConversationThread
from app.repos.base import BaseRepo


class ThreadRepo(BaseRepo[ConversationThread]):
    def __init__(self) -> None:
        super().__init__(ConversationThread)

    async def get_by_uuids(self, account_id: int, uuids: Iterable[UUID]) -> Sequence[ConversationThread]:
        uuids = list(set(uuids))
        if not uuids:
            return []
        return await self.all(
            self.base_stmt.where(ConversationThread.account_id == account_id, ConversationThread.uuid.in_(uuids))
        )

    async def get_subject_candidates(
        self, account_id: int, normalized_subjects: Iterable[str], active_since: datetime
    ) -> Sequence[ConversationThread]:
        """Threads with one of the given subjects that had activity since ``active_since``."""
        subjects = [subject for subject in set(normalized_subjects) if subject]
        if not subjects:
            return []
        return await self.all(
            self.base_stmt.where(
                ConversationThread.account_id == account_id,
                ConversationThread.normalized_subject.in_(subjects),
                ConversationThread.last_message_at >= active_since,
            )
        )

    async def save_summaries(self, account_id: int, summaries: Sequence[ThreadSummary]) -> None:
        """Insert new threads and write back updated counters of existing ones."""
        for summary in summaries:
            values = {
                "participants": sorted(summary.participants),
                "message_count": summary.message_count,
                "first_message_at": summary.first_message_at,
                "last_message_at": summary.last_message_at,
            }
            await self.run(
                insert(ConversationThread)
                .values(
                    uuid=summary.thread_id,
                    account_id=account_id,
                    subject=summary.subject,
                    normalized_subject=summary.normalized_subject,
                    **values,
                )
                .on_conflict_do_update(index_elements=["uuid"], set_=values)
            )
