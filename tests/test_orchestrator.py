import asyncio
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.controllers.providers.registry import ProviderRegistry
from app.controllers.sync.deduplication import Deduplicator
from app.controllers.sync.models import FetchResult, SyncResult, SyncTrigger
from app.controllers.sync.orchestrator import STUCK_ERROR, SyncOrchestrator
from app.controllers.sync.reconstruction import ThreadReconstructor
from app.exceptions import (
    AuthorizationRevokedError,
    CheckpointExpiredError,
    EntityNotFoundError,
    TransientProviderError,
)
from app.models import Account, AccountStatus, SyncErrorKind, SyncStatus
from settings.settings import SyncSettings
from tests.fakes import (
    FakeAccountRepo,
    FakeMessageRepo,
    FakePublisher,
    FakeStore,
    FakeSyncStateRepo,
    FakeThreadRepo,
    FakeTokenManager,
    ScriptedAdapter,
    make_message,
)


@dataclass
class Harness:
    orchestrator: SyncOrchestrator
    adapter: ScriptedAdapter
    publisher: FakePublisher
    token_manager: FakeTokenManager
    store: FakeStore


def build(store: FakeStore, token_manager: FakeTokenManager | None = None, **settings: Any) -> Harness:
    adapter = ScriptedAdapter()
    publisher = FakePublisher()
    token_manager = token_manager or FakeTokenManager()
    sync_settings = SyncSettings(**{"error_cooldown": 3600, "max_sync_duration": 1800, **settings})
    orchestrator = SyncOrchestrator(
        account_repo=FakeAccountRepo(store),  # type: ignore[arg-type]
        sync_state_repo=FakeSyncStateRepo(store),  # type: ignore[arg-type]
        message_repo=FakeMessageRepo(store),  # type: ignore[arg-type]
        thread_repo=FakeThreadRepo(store),  # type: ignore[arg-type]
        token_manager=token_manager,  # type: ignore[arg-type]
        provider_registry=ProviderRegistry([adapter]),
        deduplicator=Deduplicator(window_seconds=300),
        thread_reconstructor=ThreadReconstructor(recency_window_seconds=30 * 24 * 3600),
        publisher=publisher,  # type: ignore[arg-type]
        sync_settings=sync_settings,
        session_scope=nullcontext,
    )
    return Harness(orchestrator, adapter, publisher, token_manager, store)


async def test_initial_sync_stores_threads_and_advances_checkpoint(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(
            messages=[
                make_message("g1", now, internet_message_id="<g1@x>", subject="Offsite"),
                make_message(
                    "g2",
                    now + timedelta(minutes=5),
                    subject="Re: Offsite",
                    from_address="frank@example.com",
                    in_reply_to="<g1@x>",
                ),
                make_message("g3", now + timedelta(minutes=6), subject="Unrelated", from_address="erin@x.org"),
            ],
            checkpoint="1200",
        )
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.completed
    assert (outcome.fetched, outcome.stored, outcome.threads_created) == (3, 3, 2)
    assert harness.adapter.requested == [None]
    state = store.states[gmail_account.id]
    assert state.sync_status is SyncStatus.synced
    assert not state.is_processing
    assert state.checkpoint == "1200"
    assert state.last_sync_at is not None
    assert state.lock_acquisitions == 1

    messages = {m.provider_message_id: m for m in store.messages_for(gmail_account.id)}
    assert messages["g1"].thread_id == messages["g2"].thread_id != messages["g3"].thread_id
    assert messages["g2"].parent_message_id == "<g1@x>"
    assert store.threads[messages["g1"].thread_id].message_count == 2
    assert sorted(harness.publisher.event_ids) == ["g1", "g2", "g3"]


async def test_incremental_sync_resumes_from_stored_checkpoint(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    store.add_state(gmail_account.id, sync_status=SyncStatus.synced, checkpoint="1200")
    harness = build(store)
    harness.adapter.script = [FetchResult(messages=[make_message("g4", now)], checkpoint="1300")]

    outcome = await harness.orchestrator.sync_account(gmail_account.id, SyncTrigger.push)

    assert harness.adapter.requested == ["1200"]
    assert outcome.trigger is SyncTrigger.push
    assert outcome.checkpoint == "1300"
    assert store.states[gmail_account.id].checkpoint == "1300"


async def test_pages_are_followed_until_provider_reports_no_more(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(messages=[make_message("a", now, subject="A")], checkpoint="p1", has_more=True),
        FetchResult(messages=[make_message("b", now, subject="B")], checkpoint="p2"),
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert harness.adapter.requested == [None, "p1"]
    assert outcome.pages == 2
    assert store.states[gmail_account.id].checkpoint == "p2"


async def test_page_limit_ends_the_pass(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    harness = build(store, max_pages_per_pass=2)
    harness.adapter.script = [
        FetchResult(messages=[], checkpoint=f"p{page}", has_more=True) for page in range(1, 5)
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.completed
    assert outcome.pages == 2
    assert store.states[gmail_account.id].checkpoint == "p2"


async def test_failure_mid_pass_keeps_committed_pages(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(messages=[make_message("a", now)], checkpoint="p1", has_more=True),
        TransientProviderError("HTTP 503"),
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.failed
    state = store.states[gmail_account.id]
    assert state.sync_status is SyncStatus.error
    assert state.last_error_kind is SyncErrorKind.transient
    assert not state.is_processing
    assert state.checkpoint == "p1"
    assert [m.provider_message_id for m in store.messages_for(gmail_account.id)] == ["a"]
    assert harness.publisher.event_ids == ["a"]


async def test_reply_and_resent_copy_in_one_batch(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(
            messages=[
                make_message("m1", now, internet_message_id="<m1@x>", subject="Budget review"),
                make_message(
                    "m2",
                    now + timedelta(minutes=1),
                    subject="Re: Budget review",
                    from_address="erin@example.com",
                    in_reply_to="<m1@x>",
                ),
                make_message("m3", now + timedelta(seconds=90), subject="Budget review"),
            ],
            checkpoint="500",
        )
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert (outcome.stored, outcome.duplicates, outcome.threads_created) == (2, 1, 1)
    assert sorted(m.provider_message_id for m in store.messages_for(gmail_account.id)) == ["m1", "m2"]
    assert [thread.message_count for thread in store.threads.values()] == [2]
    state = store.states[gmail_account.id]
    assert state.checkpoint == "500"
    assert state.sync_status is SyncStatus.synced
    assert sorted(harness.publisher.event_ids) == ["m1", "m2"]


async def test_webhooks_are_sent_after_the_lock_is_released(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    harness = build(store)
    harness.adapter.script = [FetchResult(messages=[make_message("a", now)], checkpoint="1")]
    lock_held = []
    publish = harness.publisher.publish_created

    async def record_lock(account: Account, messages: Any) -> int:
        lock_held.append(store.states[account.id].is_processing)
        return await publish(account, messages)

    harness.publisher.publish_created = record_lock  # type: ignore[method-assign]

    await harness.orchestrator.sync_account(gmail_account.id)

    assert lock_held == [False]
    assert harness.publisher.event_ids == ["a"]


async def test_pass_reset_by_maintenance_leaves_the_next_pass_alone(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    harness = build(store, max_sync_duration=0)
    harness.adapter.delay = 0.05
    harness.adapter.script = [FetchResult(messages=[make_message("a", now)], checkpoint="p1")]

    first = asyncio.create_task(harness.orchestrator.sync_account(gmail_account.id))
    await asyncio.sleep(0.01)
    assert await harness.orchestrator.recover_stuck_accounts() == [gmail_account.id]
    second_lease = datetime.now(UTC)
    assert await FakeSyncStateRepo(store).try_acquire(gmail_account.id, second_lease) is not None

    outcome = await first

    assert outcome.result is SyncResult.failed
    state = store.states[gmail_account.id]
    assert state.is_processing
    assert state.processing_started_at == second_lease
    assert state.sync_status is SyncStatus.syncing
    assert state.last_error_kind is SyncErrorKind.stuck
    assert state.checkpoint is None
    assert harness.publisher.event_ids == []


async def test_refetched_messages_are_not_stored_or_announced_twice(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(messages=[make_message("a", now)], checkpoint="1"),
        FetchResult(messages=[make_message("a", now)], checkpoint="2"),
    ]

    await harness.orchestrator.sync_account(gmail_account.id)
    second = await harness.orchestrator.sync_account(gmail_account.id)

    assert (second.stored, second.duplicates) == (0, 1)
    assert len(store.messages_for(gmail_account.id)) == 1
    assert harness.publisher.event_ids == ["a"]


async def test_reply_in_later_pass_joins_stored_thread(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    harness = build(store)
    harness.adapter.script = [
        FetchResult(messages=[make_message("a", now, internet_message_id="<a@x>", subject="Hiring")], checkpoint="1"),
        FetchResult(
            messages=[
                make_message(
                    "b", now + timedelta(days=2), subject="Totally new", from_address="z@z.io", in_reply_to="<a@x>"
                )
            ],
            checkpoint="2",
        ),
    ]

    await harness.orchestrator.sync_account(gmail_account.id)
    second = await harness.orchestrator.sync_account(gmail_account.id)

    assert second.threads_created == 0
    assert len(store.threads) == 1
    thread = next(iter(store.threads.values()))
    assert thread.message_count == 2
    assert "z@z.io" in thread.participants


async def test_held_lock_drops_the_trigger(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store.add_state(gmail_account.id, sync_status=SyncStatus.syncing, is_processing=True, processing_started_at=now)
    harness = build(store)

    outcome = await harness.orchestrator.sync_account(gmail_account.id, SyncTrigger.push)

    assert outcome.result is SyncResult.skipped_locked
    assert harness.adapter.requested == []
    assert store.states[gmail_account.id].is_processing


async def test_overlapping_triggers_run_a_single_pass(store: FakeStore, gmail_account: Account) -> None:
    harness = build(store)
    harness.adapter.delay = 0.05

    results = await asyncio.gather(
        harness.orchestrator.sync_account(gmail_account.id, SyncTrigger.poll),
        harness.orchestrator.sync_account(gmail_account.id, SyncTrigger.push),
    )

    assert sorted(outcome.result.value for outcome in results) == ["completed", "skipped_locked"]
    assert len(harness.adapter.requested) == 1
    assert store.states[gmail_account.id].lock_acquisitions == 1


async def test_recent_error_is_in_backoff(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store.add_state(
        gmail_account.id,
        sync_status=SyncStatus.error,
        last_error_kind=SyncErrorKind.transient,
        last_error_at=now - timedelta(minutes=5),
    )
    harness = build(store)

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.skipped_backoff
    assert harness.adapter.requested == []


async def test_forced_sync_bypasses_backoff(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store.add_state(
        gmail_account.id,
        sync_status=SyncStatus.error,
        last_error_kind=SyncErrorKind.transient,
        last_error_at=now - timedelta(minutes=5),
    )
    harness = build(store)

    outcome = await harness.orchestrator.sync_account(gmail_account.id, SyncTrigger.manual, force=True)

    assert outcome.result is SyncResult.completed
    state = store.states[gmail_account.id]
    assert state.sync_status is SyncStatus.synced
    assert state.last_error is None


async def test_expired_cooldown_allows_retry_and_records_attempt(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    store.add_state(
        gmail_account.id,
        sync_status=SyncStatus.error,
        last_error_kind=SyncErrorKind.transient,
        last_error_at=now - timedelta(hours=2),
    )
    harness = build(store)
    harness.adapter.script = [TransientProviderError("still down")]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.failed
    state = store.states[gmail_account.id]
    assert state.last_error_recovery_attempt is not None
    assert state.last_error_recovery_attempt >= now


def test_retry_waits_for_latest_recovery_attempt(store: FakeStore, now: datetime) -> None:
    orchestrator = build(store).orchestrator
    state = store.add_state(
        1,
        sync_status=SyncStatus.error,
        last_error_kind=SyncErrorKind.transient,
        last_error_at=now - timedelta(hours=3),
        last_error_recovery_attempt=now - timedelta(minutes=10),
    )

    assert not orchestrator.is_retry_allowed(state, now)
    assert orchestrator.is_retry_allowed(state, now + timedelta(minutes=51))


def test_authorization_errors_are_never_retried_automatically(store: FakeStore, now: datetime) -> None:
    orchestrator = build(store).orchestrator
    state = store.add_state(
        1,
        sync_status=SyncStatus.error,
        last_error_kind=SyncErrorKind.authorization,
        last_error_at=now - timedelta(days=3),
    )

    assert not orchestrator.is_retry_allowed(state, now)


async def test_revoked_authorization_is_recorded(store: FakeStore, outlook_account: Account) -> None:
    harness = build(store, token_manager=FakeTokenManager(AuthorizationRevokedError("invalid_grant")))

    outcome = await harness.orchestrator.sync_account(outlook_account.id)

    assert outcome.result is SyncResult.failed
    state = store.states[outlook_account.id]
    assert state.last_error_kind is SyncErrorKind.authorization
    assert not state.is_processing


async def test_slow_provider_times_out_and_releases_lock(store: FakeStore, gmail_account: Account) -> None:
    harness = build(store, adapter_timeout=0.05)
    harness.adapter.delay = 1

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.failed
    assert "exceeded" in (outcome.error or "")
    state = store.states[gmail_account.id]
    assert state.last_error_kind is SyncErrorKind.transient
    assert not state.is_processing


async def test_unexpected_error_is_classified_internal(store: FakeStore, gmail_account: Account) -> None:
    harness = build(store)
    harness.adapter.script = [ValueError("boom")]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.failed
    assert store.states[gmail_account.id].last_error_kind is SyncErrorKind.internal


async def test_expired_checkpoint_falls_back_to_full_fetch(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    store.add_state(gmail_account.id, sync_status=SyncStatus.synced, checkpoint="old")
    harness = build(store)
    harness.adapter.script = [
        CheckpointExpiredError("history id too old"),
        FetchResult(messages=[make_message("a", now)], checkpoint="fresh"),
    ]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.completed
    assert harness.adapter.requested == ["old", None]
    assert store.states[gmail_account.id].checkpoint == "fresh"


async def test_checkpoint_expiry_on_full_fetch_fails_the_pass(store: FakeStore, gmail_account: Account) -> None:
    harness = build(store)
    harness.adapter.script = [CheckpointExpiredError("no history")]

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.failed
    assert harness.adapter.requested == [None]


async def test_cancelled_pass_releases_lock(store: FakeStore, gmail_account: Account) -> None:
    harness = build(store)
    harness.adapter.delay = 5

    task = asyncio.create_task(harness.orchestrator.sync_account(gmail_account.id))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    state = store.states[gmail_account.id]
    assert not state.is_processing
    assert state.sync_status is SyncStatus.error


async def test_inactive_account_is_skipped(store: FakeStore, gmail_account: Account) -> None:
    gmail_account.status = AccountStatus.inactive
    harness = build(store)

    outcome = await harness.orchestrator.sync_account(gmail_account.id)

    assert outcome.result is SyncResult.skipped_inactive
    assert gmail_account.id not in store.states


async def test_unknown_account_raises(store: FakeStore) -> None:
    harness = build(store)

    with pytest.raises(EntityNotFoundError):
        await harness.orchestrator.sync_account(404)


async def test_stuck_locks_are_released_by_maintenance(store: FakeStore, now: datetime) -> None:
    store.add_state(1, sync_status=SyncStatus.syncing, is_processing=True, processing_started_at=now - timedelta(hours=1))
    store.add_state(2, sync_status=SyncStatus.syncing, is_processing=True, processing_started_at=now - timedelta(minutes=1))
    harness = build(store)

    recovered = await harness.orchestrator.recover_stuck_accounts()

    assert recovered == [1]
    stuck = store.states[1]
    assert not stuck.is_processing
    assert stuck.sync_status is SyncStatus.error
    assert stuck.last_error_kind is SyncErrorKind.stuck
    assert stuck.last_error == STUCK_ERROR
    assert store.states[2].is_processing
