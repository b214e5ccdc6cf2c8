import logging
from typing import Iterable

from app.controllers.providers.base import ChannelAdapter, ProviderAdapter
from app.exceptions import NotSupportedError
from app.models import AccountProvider


class ProviderRegistry:
    """Looks up the adapter responsible for an account's provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._logger = logging.getLogger(__name__)
        self._adapters: dict[AccountProvider, ProviderAdapter] = {adapter.provider: adapter for adapter in adapters}

    def get(self, provider: AccountProvider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise NotSupportedError(f"No adapter registered for provider {provider.value}", provider=provider.value)
        return adapter

    def channel_adapter(self, provider: AccountProvider) -> ChannelAdapter:
        adapter = self.get(provider)
        if not isinstance(adapter, ChannelAdapter):
            raise NotSupportedError(f"Provider {provider.value} does not support push channels", provider=provider.value)
        return adapter

    async def close_all(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                self._logger.warning(f"Error closing {adapter.provider.value} adapter: {e}")
