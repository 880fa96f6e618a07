"""Flex credential settings endpoint."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.crypto import CredentialCipher
from ...schemas import FlexCredentialsRequest, FlexCredentialsResponse
from ...services.credentials import save_flex_credentials
from ..dependencies import InternalAuth, RequestContext, get_cipher_factory, get_db_session, get_request_context

router = APIRouter(dependencies=[InternalAuth])


@router.put("/settings/flex", response_model=FlexCredentialsResponse)
async def put_flex_settings(
    payload: FlexCredentialsRequest,
    session: AsyncSession = Depends(get_db_session),
    context: RequestContext = Depends(get_request_context),
    cipher_factory: Callable[[], CredentialCipher] = Depends(get_cipher_factory),
) -> FlexCredentialsResponse:
    try:
        holder = await save_flex_credentials(
            session,
            context.user_id,
            cipher_factory(),
            flex_token=payload.flex_token,
            query_id=payload.query_id,
            base_ccy=payload.base_ccy,
            name=payload.name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return FlexCredentialsResponse(ok=True, holder_id=holder.id, base_ccy=holder.base_ccy)


__all__ = ["router"]
