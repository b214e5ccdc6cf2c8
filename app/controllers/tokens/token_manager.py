import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from app.controllers.sync.models import ProviderCredentials
from app.controllers.tokens.oauth_client import OAuthTokenClient
from app.exceptions import AuthorizationRevokedError, TransientProviderError
from app.models import Account, AccountProvider, IntegrationToken
from app.repos.integration_token import IntegrationTokenRepo
from app.utils.crypto import CredentialCipher
from settings.settings import OAuthSettings

TokenKey = tuple[AccountProvider, str, str]


class TokenLifecycleManager:
    """
    Hands out valid OAuth access tokens, refreshing them shortly before expiry.

    At most one refresh per (provider, environment, client identity) is in flight at any time;
    concurrent callers await the same task. The refresh runs in its own session scope so it
    completes even when the caller that started it is cancelled.
    """

    def __init__(
        self,
        integration_token_repo: IntegrationTokenRepo,
        oauth_client: OAuthTokenClient,
        oauth_settings: OAuthSettings,
        session_scope: Callable[[], AbstractAsyncContextManager[Any]],
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._integration_token_repo = integration_token_repo
        self._oauth_client = oauth_client
        self._settings = oauth_settings
        self._session_scope = session_scope
        self._refresh_margin = timedelta(seconds=oauth_settings.refresh_margin)
        self._in_flight: dict[TokenKey, asyncio.Task[str]] = {}

    async def credentials_for(self, account: Account) -> ProviderCredentials:
        if account.provider == AccountProvider.imap:
            if not account.credentials:
                raise AuthorizationRevokedError(
                    f"No stored IMAP password for {account.email}", account=account.email, provider="imap"
                )
            return ProviderCredentials(
                username=account.provider_context.get("username", account.email),
                password=CredentialCipher.decrypt(account.credentials),
            )

        access_token = await self.get_valid_token(account.provider, self._settings.environment, str(account.uuid))
        return ProviderCredentials(access_token=access_token)

    async def get_valid_token(self, provider: AccountProvider, environment: str, client_identity: str = "") -> str:
        token = await self._integration_token_repo.get_by_identity(provider, environment, client_identity)
        if token is None:
            raise AuthorizationRevokedError(
                f"No {provider.value} token stored for '{client_identity}' in {environment}", provider=provider.value
            )

        if not self._needs_refresh(token, datetime.now(UTC)):
            return CredentialCipher.decrypt(token.access_token)

        key: TokenKey = (provider, environment, client_identity)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: TokenKey, task: asyncio.Task[str]) -> None:
        self._in_flight.pop(key, None)
        # Mark the outcome retrieved; every waiter already received it through shield().
        if not task.cancelled():
            task.exception()

    def _needs_refresh(self, token: IntegrationToken, now: datetime) -> bool:
        return token.expires_at - now <= self._refresh_margin

    async def _refresh(self, key: TokenKey) -> str:
        provider, environment, client_identity = key
        async with self._session_scope():
            token = await self._integration_token_repo.get_by_identity(provider, environment, client_identity)
            if token is None:
                raise AuthorizationRevokedError(f"{provider.value} token for '{client_identity}' disappeared")

            now = datetime.now(UTC)
            if not self._needs_refresh(token, now):
                return CredentialCipher.decrypt(token.access_token)
            if not token.refresh_token:
                self._logger.error(f"No refresh token for {provider.value} '{client_identity}', re-authorization required")
                raise AuthorizationRevokedError(
                    f"No refresh token stored for {provider.value} '{client_identity}'", provider=provider.value
                )

            try:
                grant = await self._oauth_client.refresh(provider, CredentialCipher.decrypt(token.refresh_token))
            except AuthorizationRevokedError as e:
                self._logger.error(f"Refresh token revoked for {provider.value} '{client_identity}': {e.message}")
                raise
            except TransientProviderError as e:
                if token.expires_at > now:
                    self._logger.warning(
                        f"Transient refresh failure for {provider.value} '{client_identity}', "
                        f"using current token until {token.expires_at.isoformat()}: {e.message}"
                    )
                    return CredentialCipher.decrypt(token.access_token)
                self._logger.warning(
                    f"Transient refresh failure for {provider.value} '{client_identity}' with an expired token: "
                    f"{e.message}"
                )
                raise

            await self._integration_token_repo.save_refreshed(
                token,
                access_token=CredentialCipher.encrypt(grant.access_token),
                expires_in=grant.expires_in,
                generated_at=grant.generated_at,
                refresh_token=CredentialCipher.encrypt(grant.refresh_token) if grant.refresh_token else None,
                scope=grant.scope,
            )
            self._logger.info(f"Refreshed {provider.value} token for '{client_identity}', expires in {grant.expires_in}s")
            return grant.access_token
