"""
Middleware that ends each request's database transaction.
"""

import logging
from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi_async_sqlalchemy import db
from fastapi_async_sqlalchemy.exceptions import MissingSessionError
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AutoCommitMiddleware(BaseHTTPMiddleware):
    """
    Commits the request session when the response is successful and rolls it back otherwise.

    Sync passes triggered from a request run in their own session and commit on their own; this
    only covers what the request handler itself wrote.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        try:
            response = await call_next(request)
        except Exception as e:
            await self._end_transaction(commit=False, reason=str(e))
            raise

        await self._end_transaction(commit=response.status_code < 400, reason=f"HTTP {response.status_code}")
        return response

    @staticmethod
    async def _end_transaction(commit: bool, reason: str) -> None:
        try:
            session = db.session
        except MissingSessionError:
            logger.debug("No database session found for request")
            return

        try:
            if commit:
                await session.commit()
                logger.debug("Database transaction committed")
            else:
                await session.rollback()
                logger.debug(f"Database transaction rolled back ({reason})")
        except Exception as e:
            logger.warning(f"Failed to end database transaction: {e}")
