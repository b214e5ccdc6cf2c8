from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncGenerator

from fastapi_async_sqlalchemy import SQLAlchemyMiddleware, db
from starlette.applications import Starlette

from settings import settings

ENGINE_ARGS = {
    "echo": False,
    "future": True,
    "pool_size": settings.database.min_pool_size,
    "max_overflow": settings.database.max_pool_size - settings.database.min_pool_size,
}
SESSION_ARGS = {"expire_on_commit": False}


def init_standalone_db() -> None:
    """Bind fastapi_async_sqlalchemy's session factory outside of a FastAPI app."""
    SQLAlchemyMiddleware(Starlette(), db_url=settings.database.url, engine_args=ENGINE_ARGS, session_args=SESSION_ARGS)


@asynccontextmanager
async def fastapi_sqlalchemy_context() -> AsyncGenerator[None, None]:
    """Initialize fastapi_async_sqlalchemy for standalone scripts."""
    init_standalone_db()
    async with db():
        yield


def session_scope(**kwargs: Any) -> AsyncContextManager[Any]:
    """A fresh session bound to the current task, used for each sync pass and renewal."""
    return db(**kwargs)
