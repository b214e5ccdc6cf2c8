from typing import Any, Generic, Sequence, TypeVar, cast

from fastapi_async_sqlalchemy import db
from sqlalchemy import Executable, Result, select
from sqlalchemy.sql.selectable import Select

from app.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepo(Generic[ModelType]):
    """
    Base repository over the fastapi_async_sqlalchemy session.

    The session is the request's inside the API and the one opened by ``session_scope`` in the
    worker. Repositories never commit implicitly apart from the lock statements of SyncStateRepo.
    """

    def __init__(self, model: type[ModelType]) -> None:
        self._model = model
        self._db = db

    @property
    def base_stmt(self) -> Select[tuple[ModelType]]:
        return select(self._model)

    async def get(self, id: Any) -> ModelType | None:
        return cast(ModelType | None, await self._db.session.get(self._model, id))

    async def one_or_none(self, query: Select[tuple[ModelType]]) -> ModelType | None:
        result = await self.run(query)
        return cast(ModelType | None, result.scalars().one_or_none())

    async def all(self, query: Select[tuple[ModelType]]) -> Sequence[ModelType]:
        result = await self.run(query)
        return cast(Sequence[ModelType], result.scalars().all())

    async def run(self, statement: Executable) -> Result[Any]:
        """Execute an INSERT, UPDATE or DELETE, or a select that is not over the repository's model."""
        return await self._db.session.execute(statement)

    async def update(self, model: ModelType, values: dict[str, Any]) -> ModelType:
        """Set attributes on a loaded instance and flush."""
        for key, value in values.items():
            setattr(model, key, value)
        await self.flush()
        return model

    async def commit(self) -> None:
        await self._db.session.commit()

    async def rollback(self) -> None:
        await self._db.session.rollback()

    async def flush(self) -> None:
        await self._db.session.flush()
