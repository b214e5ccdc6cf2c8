import asyncio
import logging
import time

from aioimaplib import IMAP4_SSL

from app.controllers.sync.models import ProviderCredentials
from app.exceptions import AuthorizationRevokedError, InvalidDataError, TransientProviderError
from app.models import Account
from settings.settings import IMAPSettings


class RateLimiter:
    """Token bucket rate limiter for IMAP logins."""

    def __init__(self, rate: float, burst: int | None = None):
        self._rate = rate  # tokens per second
        self._burst = burst or int(rate * 2)
        self._tokens = float(self._burst)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1) -> None:
        """Take tokens from the bucket, sleeping until enough have accumulated."""
        async with self._lock:
            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last_update) * self._rate)
            self._last_update = now

            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            wait_time = (tokens - self._tokens) / self._rate
            await asyncio.sleep(wait_time)
            self._tokens = 0
            self._last_update = time.monotonic()


class ConnectionManager:
    """
    Opens IMAP connections with a per-host cap on open connections and a login rate limit.

    A connection holds its host's slot from ``get_connection`` until ``close_connection``.
    """

    def __init__(self, imap_settings: IMAPSettings) -> None:
        self._logger = logging.getLogger(__name__)
        self._settings = imap_settings
        self._rate_limiters: dict[str, RateLimiter] = {}
        self._host_semaphores: dict[str, asyncio.Semaphore] = {}
        self._open: dict[int, asyncio.Semaphore] = {}

    def _limits_for(self, host: str) -> tuple[asyncio.Semaphore, RateLimiter]:
        limit = self._settings.max_connections_per_host
        if host not in self._host_semaphores:
            self._host_semaphores[host] = asyncio.Semaphore(limit)
            self._rate_limiters[host] = RateLimiter(rate=max(limit - 1, 1), burst=limit)
        return self._host_semaphores[host], self._rate_limiters[host]

    async def get_connection(self, account: Account, credentials: ProviderCredentials) -> IMAP4_SSL:
        """Open and authenticate a connection. Callers must close it with close_connection."""
        host = account.provider_context.get("imap_host")
        if not host:
            raise InvalidDataError(f"IMAP host not found in account context for {account.email}")
        port = int(account.provider_context.get("imap_port", self._settings.port))

        semaphore, rate_limiter = self._limits_for(host)
        await semaphore.acquire()
        try:
            await rate_limiter.acquire()
            connection = await self._login(host, port, account, credentials)
        except BaseException:
            semaphore.release()
            raise

        self._open[id(connection)] = semaphore
        self._logger.debug(f"Created new IMAP connection for {account.email}")
        return connection

    async def _login(self, host: str, port: int, account: Account, credentials: ProviderCredentials) -> IMAP4_SSL:
        try:
            connection = IMAP4_SSL(host=host, port=port, timeout=self._settings.timeout)
            await connection.wait_hello_from_server()
            response = await connection.login(credentials.username or account.email, credentials.password or "")
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientProviderError(f"Failed to connect to {host} for {account.email}: {e}") from e

        if response.result != "OK":
            self._logger.warning(f"Failed to login to {host} for {account.email}: {response.result}")
            raise AuthorizationRevokedError(
                f"IMAP login rejected by {host} for {account.email}", account=account.email, provider="imap"
            )
        return connection

    async def close_connection(self, connection: IMAP4_SSL, account: Account) -> None:
        try:
            await asyncio.wait_for(connection.logout(), timeout=5)
            self._logger.debug(f"Closed connection for {account.email}")
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout closing connection for {account.email}")
        except Exception as e:
            self._logger.warning(f"Error closing connection for {account.email}: {e}")
        finally:
            semaphore = self._open.pop(id(connection), None)
            if semaphore is not None:
                semaphore.release()
