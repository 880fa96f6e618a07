"""Translate domain errors into JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..errors import CredentialError, CredentialsMissing, FlexError, HolderNotFound, ParseError
from ..schemas import ErrorResponse

logger = logging.getLogger(__name__)

RENEW_FLEX_TOKEN = "RENEW_FLEX_TOKEN"
CONFIGURE_FLEX_CREDENTIALS = "CONFIGURE_FLEX_CREDENTIALS"


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _flex_error(request: Request, exc: FlexError) -> JSONResponse:
    logger.warning("Flex error on %s: %s (code=%s)", request.url.path, exc.message, exc.code)
    return _error(
        status.HTTP_400_BAD_REQUEST,
        ErrorResponse(error=exc.message, code=exc.code, needs_action=RENEW_FLEX_TOKEN if exc.needs_reauth else None),
    )


async def _parse_error(request: Request, exc: ParseError) -> JSONResponse:
    logger.warning("Statement parse error on %s: %s", request.url.path, exc)
    return _error(status.HTTP_400_BAD_REQUEST, ErrorResponse(error=str(exc), code="PARSE_ERROR"))


async def _credentials_missing(request: Request, exc: CredentialsMissing) -> JSONResponse:
    return _error(
        status.HTTP_400_BAD_REQUEST,
        ErrorResponse(error=str(exc), code="CREDENTIALS_MISSING", needs_action=CONFIGURE_FLEX_CREDENTIALS),
    )


async def _credential_error(request: Request, exc: CredentialError) -> JSONResponse:
    logger.error("Credential encryption failure on %s: %s", request.url.path, exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorResponse(error=str(exc), code="CREDENTIAL_ERROR"))


async def _holder_not_found(request: Request, exc: HolderNotFound) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, ErrorResponse(error=str(exc), code="HOLDER_NOT_FOUND"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FlexError, _flex_error)
    app.add_exception_handler(ParseError, _parse_error)
    app.add_exception_handler(CredentialsMissing, _credentials_missing)
    app.add_exception_handler(CredentialError, _credential_error)
    app.add_exception_handler(HolderNotFound, _holder_not_found)


__all__ = ["CONFIGURE_FLEX_CREDENTIALS", "RENEW_FLEX_TOKEN", "register_error_handlers"]
