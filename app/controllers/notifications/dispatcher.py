import asyncio
import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from app.api.payloads.webhooks import GmailNotification, OutlookNotificationBatch
from app.controllers.providers.registry import ProviderRegistry
from app.controllers.sync.models import ChannelHandle, SyncTrigger
from app.controllers.sync.orchestrator import SyncOrchestrator
from app.controllers.tokens.token_manager import TokenLifecycleManager
from app.exceptions import MalformedPayloadError
from app.models import Account, AccountProvider, PushChannel
from app.repos.account import AccountRepo
from app.repos.push_channel import PushChannelRepo
from settings.settings import ChannelSettings, SyncSettings


class NotificationStatus(Enum):
    accepted = "accepted"
    ignored = "ignored"


@dataclass
class NotificationAck:
    status: NotificationStatus
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: int | None = None


@dataclass
class RenewalReport:
    established: int = 0
    renewed: int = 0
    failed: int = 0


class NotificationDispatcher:
    """
    Turns provider change notifications into out-of-band sync triggers and keeps push channels alive.

    Notifications are acknowledged as soon as the trigger is scheduled; the sync itself runs in a
    background task that the dispatcher owns until it finishes or ``shutdown`` cancels it.
    """

    def __init__(
        self,
        account_repo: AccountRepo,
        push_channel_repo: PushChannelRepo,
        token_manager: TokenLifecycleManager,
        provider_registry: ProviderRegistry,
        orchestrator: SyncOrchestrator,
        channel_settings: ChannelSettings,
        sync_settings: SyncSettings,
        session_scope: Callable[[], AbstractAsyncContextManager[Any]],
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._push_channel_repo = push_channel_repo
        self._token_manager = token_manager
        self._provider_registry = provider_registry
        self._orchestrator = orchestrator
        self._channel_settings = channel_settings
        self._sync_settings = sync_settings
        self._session_scope = session_scope
        self._tasks: set[asyncio.Task[None]] = set()

    async def handle_notification(
        self, provider: AccountProvider, channel_id: str, payload: Any
    ) -> NotificationAck:
        """
        Validate a notification and trigger a push sync for the account it names.

        Raises:
            MalformedPayloadError: the payload cannot be interpreted or fails clientState verification.
        """
        gmail_notification = None
        outlook_batch = None
        if provider == AccountProvider.gmail:
            gmail_notification = GmailNotification.from_payload(payload)
        elif provider == AccountProvider.outlook:
            outlook_batch = OutlookNotificationBatch.from_payload(payload)
        else:
            self._logger.info(f"Ignoring notification for poll-only provider {provider.value}")
            return NotificationAck(NotificationStatus.ignored)

        account = await self._resolve_account(provider, channel_id)
        if account is None:
            return NotificationAck(NotificationStatus.ignored)

        if gmail_notification is not None:
            if gmail_notification.email_address.lower() != account.email.lower():
                self._logger.warning(
                    f"Gmail notification for {gmail_notification.email_address} delivered to account {account.email}"
                )
                return NotificationAck(NotificationStatus.ignored, account_id=account.id)
        elif outlook_batch is not None:
            channel = await self._push_channel_repo.get_by_account(account.id)
            if not self._verify_graph_batch(account, channel, outlook_batch):
                return NotificationAck(NotificationStatus.ignored, account_id=account.id)

        self.trigger(account.id, SyncTrigger.push)
        return NotificationAck(NotificationStatus.accepted, account_id=account.id)

    async def _resolve_account(self, provider: AccountProvider, channel_id: str) -> Account | None:
        try:
            account_uuid = UUID(channel_id)
        except ValueError:
            self._logger.warning(f"Ignoring {provider.value} notification for malformed channel id '{channel_id}'")
            return None

        account = await self._account_repo.get_by_uuid(account_uuid)
        if account is None or not account.is_active:
            self._logger.info(f"Ignoring {provider.value} notification for unknown or inactive account {channel_id}")
            return None
        if account.provider != provider:
            self._logger.warning(
                f"Ignoring {provider.value} notification for {account.provider.value} account {account.email}"
            )
            return None
        return account

    def _verify_graph_batch(
        self, account: Account, channel: PushChannel | None, batch: OutlookNotificationBatch
    ) -> bool:
        if channel is None:
            self._logger.warning(f"Graph notification for {account.email} without a registered subscription")
            return False

        matching = [item for item in batch.value if item.subscription_id == channel.channel_id]
        if not matching:
            self._logger.warning(f"Graph notification for {account.email} names an unknown subscription")
            return False
        if channel.client_state and any(item.client_state != channel.client_state for item in matching):
            raise MalformedPayloadError(
                f"Graph notification clientState mismatch for {account.email}", account=account.email
            )
        return True

    def trigger(self, account_id: int, trigger: SyncTrigger = SyncTrigger.push) -> asyncio.Task[None]:
        """Schedule a sync without waiting for it. Overlapping triggers collapse on the account lock."""
        task = asyncio.create_task(self._run_sync(account_id, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_sync(self, account_id: int, trigger: SyncTrigger) -> None:
        try:
            outcome = await self._orchestrator.sync_account(account_id, trigger)
            self._logger.debug(f"{trigger.value} sync of account {account_id} finished: {outcome.result.value}")
        except Exception:
            self._logger.exception(f"{trigger.value} sync of account {account_id} failed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait for in-flight triggers, cancelling whatever is still running after ``timeout``."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Cancelled {len(pending)} in-flight sync triggers on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    def renewal_threshold(self, provider: AccountProvider) -> timedelta:
        if provider == AccountProvider.gmail:
            return timedelta(seconds=self._channel_settings.gmail_renewal_threshold)
        return timedelta(seconds=self._channel_settings.outlook_renewal_threshold)

    def needs_renewal(self, account: Account, channel: PushChannel | None, now: datetime) -> bool:
        if channel is None or not channel.is_live(now):
            return True
        return channel.expires_at - now <= self.renewal_threshold(account.provider)

    async def renew_channels(self) -> RenewalReport:
        """Establish missing channels and renew those close to expiry for every channel-capable account."""
        report = RenewalReport()
        async with self._session_scope():
            now = datetime.now(UTC)
            due = [
                account.id
                for account, _, channel in await self._account_repo.get_active_sync_candidates()
                if account.provider.kind.has_channel and self.needs_renewal(account, channel, now)
            ]

        for position, account_id in enumerate(due):
            if position:
                await asyncio.sleep(self._sync_settings.account_delay)
            async with self._session_scope():
                await self._renew_channel(account_id, report)

        self._logger.info(
            f"Channel renewal: {report.established} established, {report.renewed} renewed, {report.failed} failed"
        )
        return report

    async def _renew_channel(self, account_id: int, report: RenewalReport) -> None:
        account = await self._account_repo.get(account_id)
        if account is None or not account.is_active:
            return
        channel = await self._push_channel_repo.get_by_account(account_id)
        email, now = account.email, datetime.now(UTC)
        try:
            adapter = self._provider_registry.channel_adapter(account.provider)
            credentials = await self._token_manager.credentials_for(account)
            if channel is None or not channel.is_live(now):
                handle = await adapter.establish_channel(account, credentials)
                report.established += 1
            else:
                handle = await adapter.renew_channel(
                    account,
                    credentials,
                    ChannelHandle(
                        channel_id=channel.channel_id,
                        expires_at=channel.expires_at,
                        resource_id=channel.resource_id,
                        client_state=channel.client_state,
                    ),
                )
                report.renewed += 1
            await self._push_channel_repo.save_handle(account_id, handle, now)
            await self._push_channel_repo.commit()
        except Exception as e:
            report.failed += 1
            self._logger.warning(f"Channel renewal failed for {email}, falling back to polling: {e}")
            await self._push_channel_repo.rollback()
            await self._push_channel_repo.mark_inactive(account_id, str(e))
            await self._push_channel_repo.commit()
