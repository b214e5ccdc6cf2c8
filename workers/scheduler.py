import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable

from app.controllers.notifications.dispatcher import NotificationDispatcher
from app.controllers.sync.models import SyncResult, SyncTrigger
from app.controllers.sync.orchestrator import SyncOrchestrator
from app.models import Account, ProviderKind, PushChannel, SyncState
from app.repos.account import AccountRepo
from settings.settings import ChannelSettings, SyncSettings

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    due: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class PollingScheduler:
    """
    Owns the periodic loops of the sync worker: the polling sweep, channel renewal and stuck-lock
    maintenance. Each loop runs once on start and then every configured interval.
    """

    def __init__(
        self,
        account_repo: AccountRepo,
        orchestrator: SyncOrchestrator,
        dispatcher: NotificationDispatcher,
        sync_settings: SyncSettings,
        channel_settings: ChannelSettings,
        session_scope: Callable[[], AbstractAsyncContextManager[Any]],
    ) -> None:
        self._account_repo = account_repo
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._sync_settings = sync_settings
        self._channel_settings = channel_settings
        self._session_scope = session_scope
        self._tasks: list[asyncio.Task[None]] = []
        self._sweep_running = False

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self._tasks = [
            asyncio.create_task(
                self._run_periodically("polling", self._sync_settings.poll_interval, self.run_sweep),
                name="scheduler-polling",
            ),
            asyncio.create_task(
                self._run_periodically(
                    "renewal", self._channel_settings.renewal_check_interval, self._dispatcher.renew_channels
                ),
                name="scheduler-renewal",
            ),
            asyncio.create_task(
                self._run_periodically(
                    "maintenance", self._sync_settings.maintenance_interval, self._orchestrator.recover_stuck_accounts
                ),
                name="scheduler-maintenance",
            ),
        ]
        logger.info(
            f"Scheduler started: polling every {self._sync_settings.poll_interval}s, "
            f"renewal every {self._channel_settings.renewal_check_interval}s, "
            f"maintenance every {self._sync_settings.maintenance_interval}s"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._dispatcher.shutdown()
        logger.info("Scheduler stopped")

    async def _run_periodically(self, name: str, interval: float, action: Callable[[], Awaitable[Any]]) -> None:
        while True:
            try:
                await action()
            except Exception:
                logger.exception(f"Scheduled {name} run failed")
            await asyncio.sleep(interval)

    async def run_sweep(self) -> SweepReport | None:
        """Sync every account that needs polling. Returns None when a sweep is already running."""
        if self._sweep_running:
            logger.info("Polling sweep already running, skipping this tick")
            return None

        self._sweep_running = True
        try:
            report = SweepReport()
            async with self._session_scope():
                now = datetime.now(UTC)
                staleness = timedelta(seconds=self._sync_settings.push_staleness)
                due = [
                    account.id
                    for account, state, channel in await self._account_repo.get_active_sync_candidates()
                    if self.needs_polling(account, state, channel, now, staleness)
                ]
            report.due = len(due)

            for position, account_id in enumerate(due):
                if position:
                    await asyncio.sleep(self._sync_settings.account_delay)
                try:
                    outcome = await self._orchestrator.sync_account(account_id, SyncTrigger.poll)
                except Exception:
                    logger.exception(f"Polling sync of account {account_id} failed")
                    report.failed += 1
                    continue

                if outcome.result == SyncResult.completed:
                    report.completed += 1
                elif outcome.result == SyncResult.failed:
                    report.failed += 1
                else:
                    report.skipped += 1

            logger.info(
                f"Polling sweep: {report.due} due, {report.completed} completed, "
                f"{report.failed} failed, {report.skipped} skipped"
            )
            return report
        finally:
            self._sweep_running = False

    @staticmethod
    def needs_polling(
        account: Account,
        state: SyncState | None,
        channel: PushChannel | None,
        now: datetime,
        push_staleness: timedelta,
    ) -> bool:
        if account.provider.kind is ProviderKind.poll:
            return True
        if channel is None or not channel.is_live(now):
            return True
        if state is None or state.last_sync_at is None:
            return True
        # A live channel that has been silent this long may have stopped delivering.
        return now - state.last_sync_at >= push_staleness
