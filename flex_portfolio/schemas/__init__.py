"""Schema exports for the portfolio API."""

from .portfolio import (
    AccountView,
    CashRowView,
    ErrorResponse,
    FlexCredentialsRequest,
    FlexCredentialsResponse,
    PortfolioResponse,
    PositionView,
    RefreshQueuedResponse,
    TradeView,
)

__all__ = [
    "AccountView",
    "CashRowView",
    "ErrorResponse",
    "FlexCredentialsRequest",
    "FlexCredentialsResponse",
    "PortfolioResponse",
    "PositionView",
    "RefreshQueuedResponse",
    "TradeView",
]
