from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from almoxarifado.auth import ensure_user
from almoxarifado.db import get_session, init_db
from almoxarifado.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from almoxarifado.logging_config import configure_logging
from almoxarifado.routers.auth import router as auth_router
from almoxarifado.routers.health import router as health_router
from almoxarifado.routers.products import router as products_router
from almoxarifado.routers.stock import router as stock_router
from almoxarifado.settings import load_settings

LOGGER = logging.getLogger(__name__)


def _run_startup_tasks() -> None:
    """Create tables and make sure the admin account exists."""
    settings = load_settings()
    configure_logging(settings.log_level)
    init_db()

    db = get_session()
    try:
        ensure_user(db, settings.admin_username, settings.admin_password, role="admin")
    finally:
        db.close()
    LOGGER.info("Startup complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    _run_startup_tasks()
    yield


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(InsufficientStockError)
    async def insufficient_stock_handler(request: Request, exc: InsufficientStockError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": exc.message,
                "available": exc.available,
                "requested": exc.requested,
                "shortfall": exc.shortfall,
            },
        )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": exc.message})

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


def create_app() -> FastAPI:
    settings = load_settings()
    application = FastAPI(title="Almoxarifado", lifespan=lifespan)

    application.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie="almoxarifado_session",
        max_age=60 * 60 * 24 * 7,
        same_site="lax",
        https_only=False,
    )
    register_error_handlers(application)

    application.include_router(health_router)
    application.include_router(auth_router)
    application.include_router(products_router)
    application.include_router(stock_router)
    return application


app = create_app()

