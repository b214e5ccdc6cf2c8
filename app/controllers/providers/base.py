import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Sequence, cast

import aiohttp

from app.controllers.sync.models import ChannelHandle, FetchResult, ProviderCredentials
from app.exceptions import (
    ActionError,
    AuthorizationRevokedError,
    BaseError,
    CheckpointExpiredError,
    EntityNotFoundError,
    TransientProviderError,
)
from app.models import Account, AccountProvider

QueryParams = dict[str, Any] | Sequence[tuple[str, str]]

TRANSIENT_STATUSES = {401, 403, 408, 429}


class ProviderAdapter(ABC):
    """Uniform "fetch messages since checkpoint" capability over one provider's protocol."""

    provider: ClassVar[AccountProvider]

    @abstractmethod
    async def fetch_since(
        self, account: Account, credentials: ProviderCredentials, checkpoint: str | None, limit: int
    ) -> FetchResult:
        """
        Fetch messages newer than ``checkpoint``.

        A ``None`` checkpoint requests a full (initial) fetch. Messages come back ordered by
        ``received_at`` and the returned checkpoint never moves backwards.
        """

    async def close(self) -> None:
        pass


class ChannelAdapter(ProviderAdapter):
    """Adapter whose provider can push change notifications to us."""

    @abstractmethod
    async def establish_channel(self, account: Account, credentials: ProviderCredentials) -> ChannelHandle:
        pass

    @abstractmethod
    async def renew_channel(
        self, account: Account, credentials: ProviderCredentials, handle: ChannelHandle
    ) -> ChannelHandle:
        pass


class HTTPProviderMixin:
    """Shared aiohttp session and status classification for REST based providers."""

    _timeout: int

    def __init__(self, timeout: int) -> None:
        self._logger = logging.getLogger(self.__class__.__module__)
        self._timeout = timeout
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            return self._http_session

    async def close(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    async def _request_json(
        self,
        method: str,
        url: str,
        access_token: str,
        params: QueryParams | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        session = await self._get_session()
        request_headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json", **(headers or {})}

        try:
            async with session.request(
                method, url, params=params, json=json_body, headers=request_headers
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise self.error_for_status(response.status, body, f"{method} {url}")
                if response.status == 204:
                    return {}
                return cast(dict[str, Any], await response.json(content_type=None) or {})
        except BaseError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientProviderError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def error_for_status(status: int, body: str, request: str) -> BaseError:
        message = f"{request} returned HTTP {status}: {body[:500]}"
        if status in TRANSIENT_STATUSES or status >= 500:
            return TransientProviderError(message)
        if status == 404:
            return EntityNotFoundError(message)
        if status == 410:
            return CheckpointExpiredError(message)
        return ActionError(message)


def require_access_token(credentials: ProviderCredentials) -> str:
    if not credentials.access_token:
        raise AuthorizationRevokedError("No OAuth access token available for provider request")
    return credentials.access_token
