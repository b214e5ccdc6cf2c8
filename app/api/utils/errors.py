from uuid import UUID

from dependency_injector.wiring import Provide, inject

from app.container import ApplicationContainer
from app.exceptions import EntityNotFoundError, InvalidDataError
from app.models.account import Account
from app.repos.account import AccountRepo


def parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as e:
        raise InvalidDataError(f"Invalid {name} '{value}'") from e


@inject
async def validate_account_access(
    app_id: int, account_uuid: str, account_repo: AccountRepo = Provide[ApplicationContainer.repos.account]
) -> Account:
    """
    Resolve an account owned by the calling app.

    Raises:
        InvalidDataError: the account id is not a UUID.
        EntityNotFoundError: no such account belongs to the app.
    """
    account = await account_repo.get_by_app_and_uuid(app_id, parse_uuid(account_uuid, "account id"))
    if account is None:
        raise EntityNotFoundError(f"Account {account_uuid} not found")
    return account
