"""Pydantic schemas for the portfolio API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PositionView(BaseModel):
    account_id: str
    symbol: str
    conid: int
    name: str | None = None
    side: Literal["long", "short"]
    qty: float
    avg_cost: float | None = None
    currency: str
    base_ccy: str
    current_price: float | None = None
    current_price_ccy: str | None = None
    price_status: Literal["fresh", "stale", "unavailable"] = "unavailable"
    as_of_price: datetime | None = None
    mv: float | None = None
    mv_base: float | None = None
    pl_abs: float | None = None
    pl_pct: float | None = None
    weight_pct: float | None = None
    date_added: datetime | None = None
    unit_mark_price: float | None = None
    unit_cost_basis_price: float | None = None
    total_cost_basis_money: float | None = None
    position_value: float | None = None
    pos_ccy: str | None = None
    fx_to_base: float | None = None
    report_date: str | None = None
    date_open: str | None = None


class TradeView(BaseModel):
    id: str
    date: datetime
    account_id: str
    symbol: str
    conid: int
    side: Literal["BUY", "SELL"]
    qty: float
    fill_price: float
    fees: float
    currency: str
    fx_rate_to_base: float
    listing_exchange: str | None = None
    current_price: float | None = None
    current_price_ccy: str | None = None
    as_of_price: datetime | None = None
    price_status: Literal["fresh", "stale", "unavailable"] = "unavailable"
    raw: dict[str, Any] | None = None


class CashRowView(BaseModel):
    currency: str
    ending_cash: float | None = None
    ending_settled_cash: float | None = None
    level_of_detail: str | None = None


class AccountView(BaseModel):
    account_id: str | None = None
    currency: str | None = None
    name: str | None = None
    account_type: str | None = None
    customer_type: str | None = None


class PortfolioResponse(BaseModel):
    base_ccy: str
    as_of_statement: datetime | None = None
    positions: list[PositionView] = Field(default_factory=list)
    trades: list[TradeView] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    cash_report: list[CashRowView] = Field(default_factory=list)
    cash_base_summary: float | None = None
    cash_base_total: float | None = None
    cash_approximate: bool = False
    fx_rates_derived: dict[str, float] = Field(default_factory=dict)
    account: AccountView | None = None
    stale: bool = False
    warnings: list[str] = Field(default_factory=list)
    diagnostics: dict[str, Any] | None = None


class RefreshQueuedResponse(BaseModel):
    queued: bool
    holder_id: str


class FlexCredentialsRequest(BaseModel):
    flex_token: str = Field(..., min_length=8, description="Flex Web Service token")
    query_id: str = Field(..., min_length=1, description="Flex Query identifier")
    base_ccy: str | None = Field(default=None, min_length=3, max_length=8)
    name: str | None = Field(default=None, max_length=100)


class FlexCredentialsResponse(BaseModel):
    ok: bool
    holder_id: str
    base_ccy: str | None = None


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None
    needs_action: str | None = None
