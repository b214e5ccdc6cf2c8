import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Sequence

from app.controllers.notifications.publisher import MailEventPublisher
from app.controllers.providers.base import ProviderAdapter
from app.controllers.providers.registry import ProviderRegistry
from app.controllers.sync.deduplication import Deduplicator
from app.controllers.sync.models import (
    FetchResult,
    NormalizedMessage,
    ProviderCredentials,
    SyncOutcome,
    SyncResult,
    SyncTrigger,
)
from app.controllers.sync.reconstruction import AccountThreadIndex, ThreadReconstructor, ThreadSummary
from app.controllers.tokens.token_manager import TokenLifecycleManager
from app.exceptions import (
    ActionError,
    AuthorizationRevokedError,
    CheckpointExpiredError,
    EntityNotFoundError,
    SyncLockLostError,
    SyncTimeoutError,
    TransientProviderError,
)
from app.models import Account, ConversationThread, Message, SyncErrorKind, SyncState, SyncStatus
from app.repos.account import AccountRepo
from app.repos.message import MessageRepo
from app.repos.sync_state import SyncStateRepo
from app.repos.thread import ThreadRepo
from settings.settings import SyncSettings

STUCK_ERROR = "Reset by maintenance: sync exceeded maximum duration"


class SyncOrchestrator:
    """
    Runs one sync pass per account under an exclusive, database-held lock.

    State transitions::

        uninitialized/synced/error --acquire--> syncing --success--> synced
                                                        --failure--> error

    A trigger that finds the lock held is dropped, never queued. Each fetched page is stored in
    its own transaction together with the checkpoint it advances to, so a failure part way
    through a pass keeps the pages already committed and resumes from them.

    Every write a pass makes is conditioned on the lock still carrying the ``processing_started_at``
    it acquired, so a pass reset by maintenance cannot overwrite the state of the pass that took
    the lock after it. Webhooks for the stored messages go out once the lock is released.
    """

    def __init__(
        self,
        account_repo: AccountRepo,
        sync_state_repo: SyncStateRepo,
        message_repo: MessageRepo,
        thread_repo: ThreadRepo,
        token_manager: TokenLifecycleManager,
        provider_registry: ProviderRegistry,
        deduplicator: Deduplicator,
        thread_reconstructor: ThreadReconstructor,
        publisher: MailEventPublisher,
        sync_settings: SyncSettings,
        session_scope: Callable[[], AbstractAsyncContextManager[Any]],
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._sync_state_repo = sync_state_repo
        self._message_repo = message_repo
        self._thread_repo = thread_repo
        self._token_manager = token_manager
        self._provider_registry = provider_registry
        self._deduplicator = deduplicator
        self._thread_reconstructor = thread_reconstructor
        self._publisher = publisher
        self._settings = sync_settings
        self._session_scope = session_scope

    async def sync_account(
        self, account_id: int, trigger: SyncTrigger = SyncTrigger.poll, force: bool = False
    ) -> SyncOutcome:
        """
        Run a sync pass for one account in its own session.

        ``force`` bypasses the error backoff (operator triggers) but never the lock.

        Raises:
            EntityNotFoundError: the account does not exist.
        """
        async with self._session_scope():
            return await self._sync(account_id, trigger, force)

    def is_retry_allowed(self, state: SyncState, now: datetime) -> bool:
        """Whether an automatic trigger may run against an account in this state."""
        if state.sync_status != SyncStatus.error:
            return True
        if state.last_error_kind == SyncErrorKind.authorization:
            return False

        anchors = [moment for moment in (state.last_error_at, state.last_error_recovery_attempt) if moment]
        if not anchors:
            return True
        return now >= max(anchors) + timedelta(seconds=self._settings.error_cooldown)

    async def recover_stuck_accounts(self) -> list[int]:
        """Force-release locks held longer than the maximum sync duration. Returns the account ids reset."""
        async with self._session_scope():
            now = datetime.now(UTC)
            started_before = now - timedelta(seconds=self._settings.max_sync_duration)
            recovered: list[int] = []
            for state in await self._sync_state_repo.get_stuck(started_before):
                if await self._sync_state_repo.force_release_stuck(state.account_id, started_before, STUCK_ERROR, now):
                    self._logger.warning(
                        f"Reset stuck sync for account {state.account_id}, "
                        f"processing since {state.processing_started_at}"
                    )
                    recovered.append(state.account_id)
            return recovered

    async def _sync(self, account_id: int, trigger: SyncTrigger, force: bool) -> SyncOutcome:
        outcome = SyncOutcome(account_id=account_id, trigger=trigger)

        account = await self._account_repo.get_with_app(account_id)
        if account is None:
            raise EntityNotFoundError(f"Account {account_id} not found")
        if not account.is_active:
            self._logger.debug(f"Skipping {trigger.value} sync of inactive account {account.email}")
            outcome.result = SyncResult.skipped_inactive
            return outcome

        now = datetime.now(UTC)
        state = await self._sync_state_repo.get_or_create(account_id)
        if not force and not self.is_retry_allowed(state, now):
            self._logger.debug(f"Skipping {trigger.value} sync of {account.email}, in error backoff")
            outcome.result = SyncResult.skipped_backoff
            return outcome

        acquired = await self._sync_state_repo.try_acquire(account_id, now)
        if acquired is None:
            self._logger.info(f"Skipping {trigger.value} sync of {account.email}, already in progress")
            outcome.result = SyncResult.skipped_locked
            return outcome

        # Rollback expires loaded instances, read what is needed first.
        email = account.email
        stored_ids: list[int] = []
        self._logger.info(f"Starting {trigger.value} sync of {email} from checkpoint {acquired.checkpoint}")
        try:
            await self._run_pass(account, now, acquired.checkpoint, outcome, stored_ids)
        except asyncio.CancelledError:
            await self._release_failed(account_id, email, now, "Sync pass was cancelled", SyncErrorKind.transient)
            if stored_ids:
                self._logger.warning(f"Cancelled sync of {email} did not announce {len(stored_ids)} stored messages")
            raise
        except Exception as e:
            kind = self._classify(e)
            if kind == SyncErrorKind.internal:
                self._logger.exception(f"Sync of {email} failed unexpectedly")
            else:
                self._logger.warning(f"Sync of {email} failed ({kind.value}): {e}")
            await self._release_failed(account_id, email, now, str(e), kind)
            outcome.result = SyncResult.failed
            outcome.error = str(e)
        else:
            released = await self._sync_state_repo.mark_synced(account_id, now, datetime.now(UTC))
            await self._sync_state_repo.commit()
            if not released:
                self._logger.warning(f"Sync of {email} finished after its lock was reset by maintenance")
            self._logger.info(
                f"Finished sync of {email}: {outcome.stored} stored, {outcome.duplicates} duplicates, "
                f"{outcome.threads_created} new threads over {outcome.pages} pages"
            )

        await self._publish_stored(account_id, stored_ids)
        return outcome

    async def _run_pass(
        self,
        account: Account,
        lease: datetime,
        checkpoint: str | None,
        outcome: SyncOutcome,
        stored_ids: list[int],
    ) -> None:
        credentials = await self._token_manager.credentials_for(account)
        adapter = self._provider_registry.get(account.provider)
        checkpoint_reset = False

        while outcome.pages < self._settings.max_pages_per_pass:
            try:
                fetched = await self._fetch(adapter, account, credentials, checkpoint)
            except CheckpointExpiredError:
                if checkpoint is None or checkpoint_reset:
                    raise
                self._logger.warning(f"Checkpoint for {account.email} expired, falling back to a full fetch")
                checkpoint, checkpoint_reset = None, True
                continue

            outcome.pages += 1
            outcome.fetched += len(fetched.messages)
            stored = await self._store_page(account, lease, fetched, outcome)
            stored_ids.extend(message.id for message in stored)
            if fetched.checkpoint is not None:
                checkpoint = fetched.checkpoint

            if not fetched.has_more:
                break
        else:
            self._logger.info(f"Page limit reached for {account.email}, remaining changes wait for the next pass")

        outcome.checkpoint = checkpoint

    async def _fetch(
        self, adapter: ProviderAdapter, account: Account, credentials: ProviderCredentials, checkpoint: str | None
    ) -> FetchResult:
        timeout = self._settings.adapter_timeout
        try:
            return await asyncio.wait_for(
                adapter.fetch_since(account, credentials, checkpoint, self._settings.fetch_limit), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(f"Fetching from {account.provider.value} exceeded {timeout}s") from e

    async def _store_page(
        self, account: Account, lease: datetime, fetched: FetchResult, outcome: SyncOutcome
    ) -> list[Message]:
        timeout = self._settings.store_timeout
        try:
            return await asyncio.wait_for(self._store(account, lease, fetched, outcome), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(f"Storing a page for {account.email} exceeded {timeout}s") from e

    async def _store(
        self, account: Account, lease: datetime, fetched: FetchResult, outcome: SyncOutcome
    ) -> list[Message]:
        """
        Dedup, thread and persist one page, then commit it together with its checkpoint.

        Nothing is committed once the lock taken at ``lease`` has been reset by maintenance.
        """
        existing = await self._message_repo.get_existing_lookup(
            account.id, fetched.messages, timedelta(seconds=self._settings.dedup_window)
        )
        dedup = self._deduplicator.dedup(account.id, fetched.messages, existing)
        outcome.duplicates += len(dedup.duplicates)

        index = await self._build_thread_index(account.id, dedup.novel)
        assignments = []
        for message in dedup.novel:
            assignment = self._thread_reconstructor.assign_thread(message, index)
            if assignment.created:
                outcome.threads_created += 1
            assignments.append((message, assignment.thread_id))

        await self._thread_repo.save_summaries(account.id, index.changed)
        stored = await self._message_repo.insert_many(account.id, assignments)
        if not await self._sync_state_repo.save_checkpoint(account.id, lease, fetched.checkpoint):
            raise SyncLockLostError(f"Sync lock for {account.email} was reset while the pass was running")
        await self._sync_state_repo.commit()

        outcome.stored += len(stored)
        return stored

    async def _build_thread_index(self, account_id: int, messages: Sequence[NormalizedMessage]) -> AccountThreadIndex:
        """Load the threads a page can join: those its headers point at and recent ones sharing a subject."""
        index = AccountThreadIndex()
        if not messages:
            return index

        header_ids = {identifier for message in messages for identifier in message.header_ids}
        index.message_threads.update(await self._message_repo.get_thread_ids_for(account_id, header_ids))

        active_since = min(message.received_at for message in messages) - timedelta(
            seconds=self._settings.thread_recency_window
        )
        threads = [
            *await self._thread_repo.get_by_uuids(account_id, index.message_threads.values()),
            *await self._thread_repo.get_subject_candidates(
                account_id, {message.normalized_subject for message in messages}, active_since
            ),
        ]
        for thread in threads:
            index.add_thread(self._summary_from_model(thread))
        return index

    @staticmethod
    def _summary_from_model(thread: ConversationThread) -> ThreadSummary:
        return ThreadSummary(
            thread_id=thread.uuid,
            subject=thread.subject,
            normalized_subject=thread.normalized_subject,
            participants=set(thread.participants or []),
            message_count=thread.message_count,
            first_message_at=thread.first_message_at,
            last_message_at=thread.last_message_at,
        )

    @staticmethod
    def _classify(error: Exception) -> SyncErrorKind:
        if isinstance(error, AuthorizationRevokedError):
            return SyncErrorKind.authorization
        if isinstance(error, (TransientProviderError, ActionError, EntityNotFoundError, SyncLockLostError)):
            return SyncErrorKind.transient
        return SyncErrorKind.internal

    async def _release_failed(
        self, account_id: int, email: str, lease: datetime, error: str, kind: SyncErrorKind
    ) -> None:
        try:
            await self._sync_state_repo.rollback()
            released = await self._sync_state_repo.mark_error(account_id, lease, error, kind, datetime.now(UTC))
            await self._sync_state_repo.commit()
        except Exception:
            self._logger.exception(
                f"Failed to record sync error for {email}, the lock is left to maintenance recovery"
            )
            return
        if not released:
            self._logger.warning(f"Sync error for {email} not recorded, its lock was reset by maintenance")

    async def _publish_stored(self, account_id: int, message_ids: Sequence[int]) -> None:
        """Announce the messages a pass committed. Runs after the lock is released."""
        if not message_ids:
            return
        account = await self._account_repo.get_with_app(account_id)
        if account is None:
            return
        messages = await self._message_repo.get_by_ids(account_id, message_ids)
        await self._publisher.publish_created(account, messages)
