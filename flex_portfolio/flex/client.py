"""Client for the IBKR Flex statement service.

Two endpoint families serve the same two-step protocol:

* Flex Web Service (``web``):
  ``SendRequest?t=TOKEN&q=QUERY_ID&v=3`` then ``GetStatement?t=TOKEN&q=REFERENCE&v=3``.
  Responses are ``<FlexWebServiceResponse>`` XML wrappers.
* Universal servlet (``universal``):
  ``FlexStatementService.SendRequest?t=TOKEN&q=QUERY_ID`` then
  ``FlexStatementService.GetStatement?t=TOKEN&v=REFERENCE``.
  Responses may be ``"200|... Reference Code: XYZ"`` text or XML error wrappers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

import httpx

from ..core.config import FlexPortfolioSettings, get_settings
from ..errors import HTML_RESPONSE, NETWORK, TIMEOUT, TOKEN_EXPIRED, UNEXPECTED_FORMAT, FlexError

logger = logging.getLogger(__name__)

FLEX_BASE_UNIVERSAL = "https://gdcdyn.interactivebrokers.com/Universal/servlet"
FLEX_BASE_WEBSERVICE = "https://ndcdyn.interactivebrokers.com/AccountManagement/FlexWebService"
ACCEPT_HEADER = "application/xml, text/plain;q=0.9, */*;q=0.8"
STATEMENT_NOT_READY_CODE = "1019"

EndpointFamily = Literal["web", "universal"]

_HTML_RE = re.compile(r"<!DOCTYPE\s+html|<html[\s>]", re.IGNORECASE)
_PIPE_RE = re.compile(r"^(\d+)\|(.*)$", re.DOTALL)
_REF_TEXT_RE = re.compile(r"reference\s*code[^A-Za-z0-9]{0,3}(?:is)?\s*[:=]?\s*([A-Za-z0-9-]+)", re.IGNORECASE)
_LONG_TOKEN_RE = re.compile(r"\b([A-Za-z0-9]{6,})\b")
_STATUS_RE = re.compile(r"<Status>([^<]+)</Status>", re.IGNORECASE)
_ERROR_MESSAGE_RE = re.compile(r"<ErrorMessage>([\s\S]*?)</ErrorMessage>", re.IGNORECASE)
_ERROR_CODE_RE = re.compile(r"<ErrorCode>([^<]+)</ErrorCode>", re.IGNORECASE)
_REF_NODE_RE = re.compile(r"<ReferenceCode>([^<]+)</ReferenceCode>", re.IGNORECASE)
_REF_ATTR_RE = re.compile(r'referenceCode\s*=\s*"([^"]+)"', re.IGNORECASE)
_FAIL_RE = re.compile(r"fail", re.IGNORECASE)
_EXPIRED_RE = re.compile(r"expired", re.IGNORECASE)
_TRY_AGAIN_RE = re.compile(r"try again", re.IGNORECASE)


def _group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _error_from_wrapper(text: str) -> FlexError:
    message = _group(_ERROR_MESSAGE_RE, text)
    code = _group(_ERROR_CODE_RE, text)
    return FlexError(message or "IBKR Flex error", code)


def parse_send_request_body(body: str) -> str:
    """Extract the reference code from a SendRequest response or raise ``FlexError``."""

    text = (body or "").strip()

    if _HTML_RE.search(text):
        raise FlexError(
            "Flex endpoint returned HTML (possible auth/routing issue). Check token/IP and try again.",
            HTML_RESPONSE,
        )

    pipe = _PIPE_RE.match(text)
    if pipe:
        status_code = int(pipe.group(1))
        message = pipe.group(2).strip()
        if status_code != 200:
            if _EXPIRED_RE.search(message):
                raise FlexError("Flex token expired", TOKEN_EXPIRED)
            raise FlexError(f"SendRequest error {status_code}: {message}", str(status_code))
        reference = _group(_REF_TEXT_RE, message)
        if reference:
            return reference
        tokens = _LONG_TOKEN_RE.findall(message)
        if tokens:
            return tokens[-1]

    if re.search(r"<FlexWebServiceResponse", text, re.IGNORECASE):
        status = _group(_STATUS_RE, text)
        if status and _FAIL_RE.search(status):
            raise _error_from_wrapper(text)
        reference = _group(_REF_NODE_RE, text)
        if reference:
            return reference

    for pattern in (_REF_ATTR_RE, _REF_NODE_RE, _REF_TEXT_RE):
        reference = _group(pattern, text)
        if reference:
            return reference

    if "<FlexErrorResponse" in text:
        raise _error_from_wrapper(text)

    if _EXPIRED_RE.search(text):
        raise FlexError("Flex token expired", TOKEN_EXPIRED)

    raise FlexError("Unexpected SendRequest response format", UNEXPECTED_FORMAT)


def statement_error(body: str) -> FlexError | None:
    """Return the error carried by a GetStatement body, if any."""

    if "<FlexErrorResponse" in body:
        return _error_from_wrapper(body)
    status = _group(_STATUS_RE, body)
    # Warn carries the same ErrorCode/ErrorMessage shape as Fail
    if status and status.lower() != "success":
        return _error_from_wrapper(body)
    return None


def _is_not_ready(error: FlexError) -> bool:
    return error.code == STATEMENT_NOT_READY_CODE or bool(_TRY_AGAIN_RE.search(error.message))


@dataclass(frozen=True)
class _Family:
    name: EndpointFamily
    send_url: str
    get_url: str
    reference_param: str
    extra_params: tuple[tuple[str, str], ...] = ()

    def send_params(self, token: str, query_id: str) -> dict[str, str]:
        return {"t": token, "q": query_id, **dict(self.extra_params)}

    def get_params(self, token: str, reference: str) -> dict[str, str]:
        return {"t": token, self.reference_param: reference, **dict(self.extra_params)}


WEB_SERVICE = _Family(
    name="web",
    send_url=f"{FLEX_BASE_WEBSERVICE}/SendRequest",
    get_url=f"{FLEX_BASE_WEBSERVICE}/GetStatement",
    reference_param="q",
    extra_params=(("v", "3"),),
)
UNIVERSAL = _Family(
    name="universal",
    send_url=f"{FLEX_BASE_UNIVERSAL}/FlexStatementService.SendRequest",
    get_url=f"{FLEX_BASE_UNIVERSAL}/FlexStatementService.GetStatement",
    reference_param="v",
)
_FAMILIES = {"web": WEB_SERVICE, "universal": UNIVERSAL}


class FlexStatementClient:
    """Fetch raw Flex statements, falling back across endpoint families."""

    def __init__(
        self,
        settings: FlexPortfolioSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._sleep = sleep

    @property
    def family_order(self) -> tuple[EndpointFamily, ...]:
        if self._settings.ibkr_flex_endpoint == "universal":
            return ("universal", "web")
        return ("web", "universal")

    async def fetch_statement(self, token: str, query_id: str) -> str:
        """Return the statement document for ``query_id``.

        The preferred family is tried first and the other one on failure; if
        both fail the error of the last attempt is raised.
        """

        last_error: FlexError | None = None
        for name in self.family_order:
            try:
                document = await self._fetch_from(_FAMILIES[name], token, query_id)
            except FlexError as exc:
                logger.warning("Flex %s endpoint failed: %s (code=%s)", name, exc.message, exc.code)
                last_error = exc
                continue
            logger.info("Fetched Flex statement via %s endpoint (%d bytes)", name, len(document))
            return document
        raise last_error or FlexError("Failed to fetch Flex statement", "UNKNOWN")

    async def _fetch_from(self, family: _Family, token: str, query_id: str) -> str:
        reference = await self._send_request(family, token, query_id)
        return await self._get_statement(family, token, reference)

    async def _send_request(self, family: _Family, token: str, query_id: str) -> str:
        params = family.send_params(token, query_id)
        body = await self._get("SendRequest", family.send_url, params)
        try:
            return parse_send_request_body(body)
        except FlexError as exc:
            if exc.code != UNEXPECTED_FORMAT:
                raise
            logger.info("Unparseable SendRequest response from %s endpoint, retrying once", family.name)
        body = await self._get("SendRequest", family.send_url, params)
        return parse_send_request_body(body)

    async def _get_statement(self, family: _Family, token: str, reference: str) -> str:
        params = family.get_params(token, reference)
        attempt = 0
        while True:
            body = await self._get("GetStatement", family.get_url, params)
            error = statement_error(body)
            if error is None:
                return body
            if attempt < self._settings.flex_poll_attempts and _is_not_ready(error):
                attempt += 1
                delay = self._settings.flex_poll_backoff_seconds * attempt
                logger.info("Flex statement %s not ready, polling again in %.1fs", reference, delay)
                await self._sleep(delay)
                continue
            raise error

    async def _get(self, step: str, url: str, params: dict[str, str]) -> str:
        headers = {"User-Agent": self._settings.ibkr_user_agent, "Accept": ACCEPT_HEADER}
        timeout = self._settings.flex_request_timeout_seconds
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise FlexError(f"{step} timed out after {timeout:g}s", TIMEOUT) from exc
        except httpx.HTTPError as exc:
            raise FlexError(f"{step} failed: {exc}", NETWORK) from exc
        if not response.is_success:
            raise FlexError(f"{step} failed: {response.status_code} {response.reason_phrase}")
        return response.text


__all__ = [
    "FLEX_BASE_UNIVERSAL",
    "FLEX_BASE_WEBSERVICE",
    "FlexStatementClient",
    "parse_send_request_body",
    "statement_error",
]
