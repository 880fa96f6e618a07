"""Flex statement ingestion and position reconciliation service."""

from .errors import CredentialsMissing, FlexError, FlexPortfolioError, HolderNotFound, ParseError

__version__ = "0.1.0"

__all__ = [
    "CredentialsMissing",
    "FlexError",
    "FlexPortfolioError",
    "HolderNotFound",
    "ParseError",
    "__version__",
]
