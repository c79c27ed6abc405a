from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api.dependencies import build_services
from .api.router import router
from .cache.base import AsyncCacheBackend
from .config import CreditSettings, configure_logging, get_settings
from .db.base import BaseDBManager
from .db.mongo import MongoDBManager
from .exceptions import StorageError


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[CreditSettings] = None,
    db: Optional[BaseDBManager] = None,
    cache: Optional[AsyncCacheBackend] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings, db=db, cache=cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()
        logger.info("Credit service started (%s)", type(services.db).__name__)
        yield

    app = FastAPI(title="TopTake credits", version="1.0.0", lifespan=lifespan)
    app.state.credits = services

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.warning("Storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Temporarily unavailable, please retry."},
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    app.include_router(router)
    return app
