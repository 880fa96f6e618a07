"""Statement sync and cached position endpoints."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.config import FlexPortfolioSettings
from ...core.crypto import CredentialCipher
from ...errors import CredentialsMissing
from ...schemas import PortfolioResponse, RefreshQueuedResponse
from ...services.assembler import assemble_cached_view
from ...services.credentials import get_holder
from ...services.snapshot_cache import SnapshotCache, StatementFetcher
from ...services.sync import sync_portfolio
from ..dependencies import (
    InternalAuth,
    RequestContext,
    get_cipher_factory,
    get_db_session,
    get_fetcher,
    get_request_context,
    get_settings_dep,
    get_snapshot_cache,
)

router = APIRouter(dependencies=[InternalAuth])


@router.get("/statement", response_model=PortfolioResponse)
async def get_statement(
    account_id: str | None = Query(default=None, max_length=32),
    session: AsyncSession = Depends(get_db_session),
    context: RequestContext = Depends(get_request_context),
    fetcher: StatementFetcher = Depends(get_fetcher),
    cipher_factory: Callable[[], CredentialCipher] = Depends(get_cipher_factory),
    settings: FlexPortfolioSettings = Depends(get_settings_dep),
) -> PortfolioResponse:
    return await sync_portfolio(
        session,
        context.user_id,
        fetcher,
        cipher_factory,
        account_id=account_id,
        settings=settings,
    )


@router.get("/positions", response_model=PortfolioResponse)
async def get_positions(
    context: RequestContext = Depends(get_request_context),
    cache: SnapshotCache = Depends(get_snapshot_cache),
) -> PortfolioResponse:
    snapshot = await cache.get(context.user_id)
    return assemble_cached_view(snapshot)


@router.post(
    "/positions/refresh",
    response_model=RefreshQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def refresh_positions(
    session: AsyncSession = Depends(get_db_session),
    context: RequestContext = Depends(get_request_context),
    cache: SnapshotCache = Depends(get_snapshot_cache),
) -> RefreshQueuedResponse:
    holder = await get_holder(session, context.user_id)
    if not holder.has_flex_credentials:
        raise CredentialsMissing("Missing Flex token or query id")
    queued = cache.schedule_refresh(context.user_id)
    return RefreshQueuedResponse(queued=queued, holder_id=context.user_id)


__all__ = ["router"]
