import pytest

from app.controllers.providers.base import ProviderAdapter
from app.controllers.providers.registry import ProviderRegistry
from app.controllers.sync.models import FetchResult, ProviderCredentials
from app.exceptions import NotSupportedError
from app.models import Account, AccountProvider
from tests.fakes import ScriptedAdapter


class PollOnlyAdapter(ProviderAdapter):
    provider = AccountProvider.imap

    def __init__(self) -> None:
        self.closed = False

    async def fetch_since(
        self, account: Account, credentials: ProviderCredentials, checkpoint: str | None, limit: int
    ) -> FetchResult:
        return FetchResult([], checkpoint)

    async def close(self) -> None:
        self.closed = True
        raise RuntimeError("socket already closed")


def test_lookup_by_provider() -> None:
    gmail = ScriptedAdapter(provider=AccountProvider.gmail)
    registry = ProviderRegistry([gmail, PollOnlyAdapter()])

    assert registry.get(AccountProvider.gmail) is gmail
    assert registry.channel_adapter(AccountProvider.gmail) is gmail


def test_missing_adapter_is_not_supported() -> None:
    registry = ProviderRegistry([PollOnlyAdapter()])

    with pytest.raises(NotSupportedError):
        registry.get(AccountProvider.outlook)


def test_poll_only_provider_has_no_channel_adapter() -> None:
    registry = ProviderRegistry([PollOnlyAdapter()])

    with pytest.raises(NotSupportedError):
        registry.channel_adapter(AccountProvider.imap)


async def test_close_all_continues_past_failures() -> None:
    imap = PollOnlyAdapter()
    registry = ProviderRegistry([imap, ScriptedAdapter(provider=AccountProvider.outlook)])

    await registry.close_all()

    assert imap.closed
