from app.models.app import App
from app.repos.base import BaseRepo


class AppRepo(BaseRepo[App]):
    def __init__(self) -> None:
        super().__init__(App)

    async def get_by_api_key(self, api_key: str) -> App | None:
        """Get app by API key."""
        return await self.one_or_none(self.base_stmt.where(App.api_key == api_key))
