"""Shared FastAPI dependencies for the portfolio API."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import FlexPortfolioSettings
from ..core.crypto import CredentialCipher
from ..db import Database
from ..services.snapshot_cache import SnapshotCache, StatementFetcher


def get_settings_dep(request: Request) -> FlexPortfolioSettings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db_session(request: Request) -> AsyncIterator[AsyncSession]:
    async for session in get_database(request).get_session():  # pragma: no cover - FastAPI dependency wrapper
        yield session


def get_snapshot_cache(request: Request) -> SnapshotCache:
    return request.app.state.snapshot_cache


def get_fetcher(request: Request) -> StatementFetcher:
    return request.app.state.fetcher


def get_cipher_factory(request: Request) -> Callable[[], CredentialCipher]:
    return request.app.state.cipher_factory


def verify_internal_token(
    request: Request,
    x_internal_token: str | None = Header(default=None),
) -> None:
    expected = get_settings_dep(request).internal_auth_token
    if expected is None:
        return
    if x_internal_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


InternalAuth = Depends(verify_internal_token)


@dataclass
class RequestContext:
    user_id: str


def get_request_context(x_user_id: str | None = Header(default=None)) -> RequestContext:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context")
    return RequestContext(user_id=x_user_id)


__all__ = [
    "InternalAuth",
    "RequestContext",
    "get_cipher_factory",
    "get_database",
    "get_db_session",
    "get_fetcher",
    "get_request_context",
    "get_settings_dep",
    "get_snapshot_cache",
]
