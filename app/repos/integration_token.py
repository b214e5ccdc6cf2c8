from datetime import datetime

from app.models import AccountProvider, IntegrationToken
from app.repos.base import BaseRepo


class IntegrationTokenRepo(BaseRepo[IntegrationToken]):
    def __init__(self) -> None:
        super().__init__(IntegrationToken)

    async def get_by_identity(
        self, provider: AccountProvider, environment: str, client_identity: str
    ) -> IntegrationToken | None:
        return await self.one_or_none(
            self.base_stmt.where(
                IntegrationToken.provider == provider,
                IntegrationToken.environment == environment,
                IntegrationToken.client_identity == client_identity,
            )
        )

    async def save_refreshed(
        self,
        token: IntegrationToken,
        access_token: str,
        expires_in: int,
        generated_at: datetime,
        refresh_token: str | None = None,
        scope: str | None = None,
    ) -> IntegrationToken:
        """Store a refreshed grant. Providers that do not rotate refresh tokens keep the old one."""
        values: dict[str, object] = {
            "access_token": access_token,
            "expires_in": expires_in,
            "generated_at": generated_at,
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        if scope:
            values["scope"] = scope
        token = await self.update(token, values)
        await self.commit()
        return token
