from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.deps import build_broadcaster, build_fallback_registry
from app.api.v1.router import api_router
from app.config import settings
from app.core.exceptions import BusinessError
from app.core.i18n import DEFAULT_LOCALE
from app.core.middleware import AccessLogMiddleware, RequestContextMiddleware
from app.core.redis import close_redis_client
from app.core.response import error
from app.db import dispose_engine
from app.i18n.codes import ErrorCode
from app.services.session_sync.errors import SyncError

logger = logging.getLogger("app.main")


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("session bridge starting env=%s", settings.APP_ENV)
    yield
    await app.state.broadcaster.drain()
    await close_redis_client()
    await dispose_engine()


def _locale(request: Request) -> str:
    return getattr(request.state, "locale", DEFAULT_LOCALE)


def create_app() -> FastAPI:
    _configure_logging()
    app = FastAPI(title="Session Bridge API", version="0.1.0", lifespan=_lifespan)
    app.state.fallback_registry = build_fallback_registry()
    app.state.broadcaster = build_broadcaster()
    app.include_router(api_router)
    # last added runs first
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        return error(exc.code, _locale(request), status_code=exc.status_code, **exc.kwargs)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        logger.error("unhandled %s on %s %s", exc, request.method, request.url.path)
        return error(ErrorCode.SYSTEM_ERROR, _locale(request), status_code=500)

    return app


app = create_app()
