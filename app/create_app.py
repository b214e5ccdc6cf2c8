"""
FastAPI application: provider webhooks and operator endpoints.
"""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from fastapi_async_sqlalchemy import SQLAlchemyMiddleware

from app.api.middlewares.auto_commit import AutoCommitMiddleware
from app.api.routes import api_router, webhook_router
from app.db import SESSION_ARGS
from app.exceptions import BaseError, ErrorType
from settings import settings

logger = logging.getLogger(__name__)

UNAUTHENTICATED_PATHS = ("/health", "/webhooks")


def _setup_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code or 400, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": ErrorType.INVALID_DATA.value, "error_description": str(exc.errors())},
        )

    @app.exception_handler(BaseError)
    async def handle_app_error(request: Request, exc: BaseError) -> JSONResponse:
        if 400 <= exc.status_code < 500:
            logger.warning(f"A user-related (HTTP 4xx) error occurred; {exc}", extra=exc.extra)
        else:
            logger.exception(f"An unhandled app exception occurred; {exc}", extra=exc.extra)

        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.error_type.value, "error_description": exc.message}
        )

    @app.exception_handler(Exception)
    async def handle_generic_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"An unhandled exception occurred; error: {exc}")

        content = {"error": ErrorType.UNHANDLED_EXCEPTION.value}
        if settings.environment.is_local:
            content["error_description"] = str(exc)
        return JSONResponse(status_code=500, content=content)


def create_app(use_database: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    ``use_database=False`` skips the session middlewares, for tests that override every repository.
    """
    app = FastAPI(title="mailsync", description="Multi-provider mail sync and threading engine", version="1.0.0")

    def custom_openapi() -> dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(title=app.title, version=app.version, description=app.description, routes=app.routes)
        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "BearerAuth": {"type": "http", "scheme": "bearer", "description": "App API key"}
        }
        for path, operations in openapi_schema["paths"].items():
            if path.startswith(UNAUTHENTICATED_PATHS):
                continue
            for method in operations:
                if method in ["get", "post", "put", "delete", "patch"]:
                    operations[method]["security"] = [{"BearerAuth": []}]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    setattr(app, "openapi", custom_openapi)

    _setup_error_handlers(app)

    if use_database:
        # Added first so it runs after the SQLAlchemy middleware has opened the session.
        app.add_middleware(AutoCommitMiddleware)
        app.add_middleware(
            SQLAlchemyMiddleware,
            db_url=settings.database.url,
            engine_args={
                "pool_size": settings.database.min_pool_size,
                "max_overflow": settings.database.max_pool_size - settings.database.min_pool_size,
                "pool_pre_ping": True,
                "pool_recycle": 300,
            },
            session_args=SESSION_ARGS,
        )

    app.include_router(api_router, prefix="/v1")
    app.include_router(webhook_router, prefix="/webhooks")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app
