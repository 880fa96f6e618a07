"""Exception types shared across the ingestion pipeline."""

from __future__ import annotations

import re

TOKEN_EXPIRED = "TOKEN_EXPIRED"
HTML_RESPONSE = "HTML_RESPONSE"
UNEXPECTED_FORMAT = "UNEXPECTED_FORMAT"
TIMEOUT = "TIMEOUT"
NETWORK = "NETWORK"

_EXPIRED_RE = re.compile(r"expired", re.IGNORECASE)


class FlexPortfolioError(RuntimeError):
    """Base class for errors surfaced to API callers."""


class FlexError(FlexPortfolioError):
    """Raised when the Flex reporting service fails or answers unexpectedly."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def needs_reauth(self) -> bool:
        return self.code == TOKEN_EXPIRED or bool(_EXPIRED_RE.search(self.message))

    def __repr__(self) -> str:
        return f"FlexError({self.message!r}, code={self.code!r})"


class ParseError(FlexPortfolioError):
    """Raised when a statement document is not well-formed markup."""


class CredentialsMissing(FlexPortfolioError):
    """Raised when an account holder has no stored Flex token or query id."""


class HolderNotFound(FlexPortfolioError):
    """Raised when no account holder exists for the given identifier."""


class CredentialError(FlexPortfolioError):
    """Raised when credentials cannot be encrypted or decrypted."""


__all__ = [
    "CredentialError",
    "CredentialsMissing",
    "FlexError",
    "FlexPortfolioError",
    "HTML_RESPONSE",
    "HolderNotFound",
    "NETWORK",
    "ParseError",
    "TIMEOUT",
    "TOKEN_EXPIRED",
    "UNEXPECTED_FORMAT",
]
