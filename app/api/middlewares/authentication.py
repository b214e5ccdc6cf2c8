from typing import Annotated

from dependency_injector.wiring import Provide, inject
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.container import ApplicationContainer
from app.exceptions import AuthError
from app.models.app import App
from app.repos.app import AppRepo

security = HTTPBearer(auto_error=False)


@inject
async def get_current_app(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    app_repo: AppRepo = Depends(Provide[ApplicationContainer.repos.app]),
) -> App:
    """
    Resolve the calling app from its bearer API key.

    Raises:
        AuthError: the Authorization header is missing or names no app.
    """
    if credentials is None:
        raise AuthError("Missing bearer API key")

    app = await app_repo.get_by_api_key(credentials.credentials)
    if app is None:
        raise AuthError("Invalid API key")

    return app
