"""Entry point for the flex portfolio service."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api.errors import register_error_handlers
from .api.routes import portfolio_router, settings_router
from .core.config import FlexPortfolioSettings, get_settings
from .core.crypto import CredentialCipher, get_cipher
from .core.logging import setup_logging
from .core.telemetry import setup_telemetry
from .db import Database
from .flex.client import FlexStatementClient
from .services.snapshot_cache import SnapshotCache, StatementFetcher

logger = logging.getLogger("flex_portfolio")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    database: Database = app.state.database
    setup_telemetry(app, app.state.settings, database.engine)
    await database.create_all()
    logger.info("Flex portfolio service configuration", extra=app.state.settings.dict_for_logging())
    try:
        yield
    finally:
        await app.state.snapshot_cache.aclose()
        await database.dispose()


def create_app(
    db: Database | None = None,
    *,
    fetcher: StatementFetcher | None = None,
    cipher: CredentialCipher | None = None,
    settings: FlexPortfolioSettings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    database = db or Database(settings.database_url)
    statement_fetcher = fetcher or FlexStatementClient(settings)
    cipher_factory: Callable[[], CredentialCipher] = (lambda: cipher) if cipher is not None else get_cipher

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=_lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.fetcher = statement_fetcher
    app.state.cipher_factory = cipher_factory
    app.state.snapshot_cache = SnapshotCache(database, statement_fetcher, cipher=cipher, settings=settings)

    register_error_handlers(app)
    app.include_router(portfolio_router, prefix=settings.api_prefix, tags=["portfolio"])
    app.include_router(settings_router, prefix=settings.api_prefix, tags=["settings"])

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def build_app() -> FastAPI:
    """ASGI factory for ``uvicorn --factory flex_portfolio.main:build_app``."""

    settings = get_settings()
    setup_logging(settings.log_level)
    return create_app(settings=settings)


__all__ = ["build_app", "create_app"]
