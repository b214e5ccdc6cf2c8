import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import aiohttp

from app.exceptions import AuthorizationRevokedError, InvalidDataError, TransientProviderError
from app.models import AccountProvider
from settings.settings import OAuthSettings

REVOKED_ERROR_CODES = {"invalid_grant", "invalid_client", "unauthorized_client"}


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int
    generated_at: datetime
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None


class OAuthTokenClient:
    """Exchanges refresh tokens at the Google and Microsoft identity platform token endpoints."""

    def __init__(self, oauth_settings: OAuthSettings) -> None:
        self._logger = logging.getLogger(__name__)
        self._settings = oauth_settings
        self._session: aiohttp.ClientSession | None = None

    async def init_session(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._settings.timeout))

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _endpoint(self, provider: AccountProvider) -> tuple[str, str, str]:
        if provider == AccountProvider.gmail:
            return (
                self._settings.google_token_url,
                self._settings.google_client_id,
                self._settings.google_client_secret,
            )
        if provider == AccountProvider.outlook:
            return (
                self._settings.microsoft_token_url,
                self._settings.microsoft_client_id,
                self._settings.microsoft_client_secret,
            )
        raise InvalidDataError(f"Provider {provider.value} does not use OAuth tokens", provider=provider.value)

    async def refresh(self, provider: AccountProvider, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            AuthorizationRevokedError: the grant was revoked or the client is no longer authorized.
            TransientProviderError: network failure, timeout, rate limiting or a 5xx response.
        """
        url, client_id, client_secret = self._endpoint(provider)
        await self.init_session()
        assert self._session is not None

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        try:
            async with self._session.post(url, data=form) as response:
                try:
                    body = await response.json(content_type=None) or {}
                except ValueError:
                    body = {}
                status = response.status
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Token refresh for {provider.value} timed out", provider=provider.value) from e
        except aiohttp.ClientError as e:
            raise TransientProviderError(
                f"Token refresh for {provider.value} failed: {e}", provider=provider.value
            ) from e

        error_code = body.get("error") if isinstance(body, dict) else None
        if error_code in REVOKED_ERROR_CODES or status in (400, 401):
            raise AuthorizationRevokedError(
                f"Refresh token rejected by {provider.value}: {error_code or status}", provider=provider.value
            )
        if status == 429 or status >= 500:
            raise TransientProviderError(
                f"Token endpoint for {provider.value} returned HTTP {status}", provider=provider.value
            )
        if status >= 400 or not body.get("access_token"):
            raise TransientProviderError(
                f"Unexpected token endpoint response for {provider.value}: HTTP {status}", provider=provider.value
            )

        return TokenGrant(
            access_token=body["access_token"],
            expires_in=int(body.get("expires_in", 3600)),
            generated_at=datetime.now(UTC),
            refresh_token=body.get("refresh_token"),
            scope=body.get("scope"),
            token_type=body.get("token_type"),
        )
