import asyncio
from contextlib import nullcontext
from datetime import datetime, timedelta

import pytest

from app.controllers.tokens.token_manager import TokenLifecycleManager
from app.exceptions import AuthorizationRevokedError, TransientProviderError
from app.models import Account, AccountProvider, IntegrationToken
from app.utils.crypto import CredentialCipher
from settings.settings import OAuthSettings
from tests.fakes import FakeIntegrationTokenRepo, FakeOAuthClient, FakeStore, grant

ENVIRONMENT = "production"


def store_token(
    store: FakeStore,
    account: Account,
    generated_at: datetime,
    expires_in: int = 3600,
    refresh_token: str | None = "refresh-1",
) -> IntegrationToken:
    token = IntegrationToken(
        id=len(store.tokens) + 1,
        provider=account.provider,
        environment=ENVIRONMENT,
        client_identity=str(account.uuid),
        access_token=CredentialCipher.encrypt("current-access"),
        refresh_token=CredentialCipher.encrypt(refresh_token) if refresh_token else None,
        expires_in=expires_in,
        generated_at=generated_at,
    )
    store.tokens.append(token)
    return token


def build_manager(store: FakeStore, client: FakeOAuthClient) -> tuple[TokenLifecycleManager, FakeIntegrationTokenRepo]:
    repo = FakeIntegrationTokenRepo(store)
    settings = OAuthSettings(environment=ENVIRONMENT, refresh_margin=300)
    return TokenLifecycleManager(repo, client, settings, nullcontext), repo  # type: ignore[arg-type]


async def test_valid_token_is_returned_without_refresh(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store_token(store, gmail_account, generated_at=now)
    client = FakeOAuthClient([])
    manager, _ = build_manager(store, client)

    credentials = await manager.credentials_for(gmail_account)

    assert credentials.access_token == "current-access"
    assert client.calls == []


async def test_token_inside_refresh_margin_is_refreshed_and_saved(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    token = store_token(store, gmail_account, generated_at=now - timedelta(seconds=3400))
    client = FakeOAuthClient([grant("fresh-access", refresh_token="refresh-2")])
    manager, repo = build_manager(store, client)

    access_token = await manager.get_valid_token(AccountProvider.gmail, ENVIRONMENT, str(gmail_account.uuid))

    assert access_token == "fresh-access"
    assert client.calls == [(AccountProvider.gmail, "refresh-1")]
    assert repo.saved == 1
    assert CredentialCipher.decrypt(token.access_token) == "fresh-access"
    assert CredentialCipher.decrypt(token.refresh_token or "") == "refresh-2"


async def test_concurrent_callers_share_one_refresh(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(hours=2))
    gate = asyncio.Event()
    client = FakeOAuthClient([grant("fresh-access")], gate=gate)
    manager, repo = build_manager(store, client)

    waiters = [
        asyncio.create_task(manager.get_valid_token(AccountProvider.gmail, ENVIRONMENT, str(gmail_account.uuid)))
        for _ in range(3)
    ]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    gate.set()

    assert await asyncio.gather(*waiters) == ["fresh-access"] * 3
    assert len(client.calls) == 1
    assert repo.saved == 1


async def test_cancelled_caller_does_not_abort_refresh(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(hours=2))
    gate = asyncio.Event()
    client = FakeOAuthClient([grant("fresh-access")], gate=gate)
    manager, repo = build_manager(store, client)
    identity = str(gmail_account.uuid)

    first = asyncio.create_task(manager.get_valid_token(AccountProvider.gmail, ENVIRONMENT, identity))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    second = asyncio.create_task(manager.get_valid_token(AccountProvider.gmail, ENVIRONMENT, identity))
    await asyncio.sleep(0)
    gate.set()

    assert await second == "fresh-access"
    assert len(client.calls) == 1
    assert repo.saved == 1


async def test_revoked_refresh_token_raises(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(hours=2))
    client = FakeOAuthClient([AuthorizationRevokedError("invalid_grant")])
    manager, repo = build_manager(store, client)

    with pytest.raises(AuthorizationRevokedError):
        await manager.credentials_for(gmail_account)
    assert repo.saved == 0


async def test_transient_failure_falls_back_to_unexpired_token(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(seconds=3500))
    client = FakeOAuthClient([TransientProviderError("HTTP 503")])
    manager, repo = build_manager(store, client)

    credentials = await manager.credentials_for(gmail_account)

    assert credentials.access_token == "current-access"
    assert repo.saved == 0


async def test_transient_failure_with_expired_token_raises(
    store: FakeStore, gmail_account: Account, now: datetime
) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(hours=2))
    client = FakeOAuthClient([TransientProviderError("timeout")])
    manager, _ = build_manager(store, client)

    with pytest.raises(TransientProviderError):
        await manager.credentials_for(gmail_account)


async def test_failed_refresh_is_retried_on_next_call(store: FakeStore, gmail_account: Account, now: datetime) -> None:
    store_token(store, gmail_account, generated_at=now - timedelta(hours=2))
    client = FakeOAuthClient([TransientProviderError("timeout"), grant("fresh-access")])
    manager, _ = build_manager(store, client)

    with pytest.raises(TransientProviderError):
        await manager.credentials_for(gmail_account)
    credentials = await manager.credentials_for(gmail_account)

    assert credentials.access_token == "fresh-access"
    assert len(client.calls) == 2


async def test_missing_token_requires_reauthorization(store: FakeStore, outlook_account: Account) -> None:
    manager, _ = build_manager(store, FakeOAuthClient([]))

    with pytest.raises(AuthorizationRevokedError):
        await manager.credentials_for(outlook_account)


async def test_expired_token_without_refresh_token_requires_reauthorization(
    store: FakeStore, outlook_account: Account, now: datetime
) -> None:
    store_token(store, outlook_account, generated_at=now - timedelta(hours=2), refresh_token=None)
    client = FakeOAuthClient([])
    manager, _ = build_manager(store, client)

    with pytest.raises(AuthorizationRevokedError):
        await manager.credentials_for(outlook_account)
    assert client.calls == []


async def test_imap_credentials_are_decrypted(store: FakeStore, imap_account: Account) -> None:
    imap_account.credentials = CredentialCipher.encrypt("hunter2")
    manager, _ = build_manager(store, FakeOAuthClient([]))

    credentials = await manager.credentials_for(imap_account)

    assert credentials.username == "carol@mail.test"
    assert credentials.password == "hunter2"
    assert credentials.access_token is None


async def test_imap_account_without_password_requires_reauthorization(
    store: FakeStore, imap_account: Account
) -> None:
    manager, _ = build_manager(store, FakeOAuthClient([]))

    with pytest.raises(AuthorizationRevokedError):
        await manager.credentials_for(imap_account)
