import os

os.environ["APP_ENV"] = "test"

from datetime import UTC, datetime  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402

from app.models import Account, AccountProvider, App  # noqa: E402
from tests.fakes import FakeStore, make_account  # noqa: E402


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def tenant() -> App:
    return App(id=1, uuid=uuid4(), name="acme", api_key="secret-key", webhook_url="https://hooks.acme.test/mail")


@pytest.fixture
def gmail_account(store: FakeStore, tenant: App) -> Account:
    return store.add_account(make_account(1, tenant, AccountProvider.gmail, "alice@example.com"))


@pytest.fixture
def outlook_account(store: FakeStore, tenant: App) -> Account:
    return store.add_account(make_account(2, tenant, AccountProvider.outlook, "bob@contoso.com"))


@pytest.fixture
def imap_account(store: FakeStore, tenant: App) -> Account:
    return store.add_account(
        make_account(3, tenant, AccountProvider.imap, "carol@mail.test", imap_host="imap.mail.test")
    )
