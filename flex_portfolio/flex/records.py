"""Typed records extracted from a Flex Query statement."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class StatementInfo:
    account_id: str | None = None
    from_date: str | None = None
    to_date: str | None = None
    when_generated: str | None = None
    generated_at: datetime | None = None


@dataclass(frozen=True)
class AccountInformation:
    account_id: str | None = None
    currency: str | None = None
    name: str | None = None
    account_type: str | None = None
    customer_type: str | None = None
    master_name: str | None = None


@dataclass(frozen=True)
class CashReportCurrencyRow:
    account_id: str | None = None
    currency: str | None = None
    level_of_detail: str | None = None
    from_date: str | None = None
    to_date: str | None = None
    ending_cash: Decimal | None = None
    ending_settled_cash: Decimal | None = None


@dataclass(frozen=True)
class RawTradeRecord:
    trade_id: str | None = None
    ib_exec_id: str | None = None
    order_id: str | None = None
    account_id: str | None = None
    trade_date: str | None = None
    date_time: str | None = None
    settle_date_target: str | None = None
    buy_sell: str | None = None
    quantity: Decimal | None = None
    trade_price: Decimal | None = None
    ib_commission: Decimal | None = None
    net_cash: Decimal | None = None
    cost: Decimal | None = None
    fifo_pnl_realized: Decimal | None = None
    mtm_pnl: Decimal | None = None
    symbol: str | None = None
    description: str | None = None
    conid: int | None = None
    asset_category: str | None = None
    sub_category: str | None = None
    listing_exchange: str | None = None
    level_of_detail: str | None = None
    currency: str | None = None
    fx_rate_to_base: Decimal = Decimal("1")

    def to_json(self) -> dict[str, Any]:
        return {key: _json_value(value) for key, value in asdict(self).items()}


@dataclass(frozen=True)
class RawTaxRecord:
    trade_id: str | None = None
    order_id: str | None = None
    tax_description: str | None = None
    tax_amount: Decimal | None = None
    currency: str | None = None
    conid: int | None = None
    symbol: str | None = None
    date: str | None = None


@dataclass(frozen=True)
class RawOpenPositionRecord:
    account_id: str | None = None
    currency: str | None = None
    fx_rate_to_base: Decimal | None = None
    asset_category: str | None = None
    sub_category: str | None = None
    symbol: str | None = None
    description: str | None = None
    conid: int | None = None
    listing_exchange: str | None = None
    report_date: str | None = None
    position: Decimal | None = None
    mark_price: Decimal | None = None
    position_value: Decimal | None = None
    open_price: Decimal | None = None
    cost_basis_price: Decimal | None = None
    cost_basis_money: Decimal | None = None
    side: str | None = None
    level_of_detail: str | None = None
    open_date_time: str | None = None
    holding_period_date_time: str | None = None

    @property
    def unit_cost_basis_price(self) -> Decimal | None:
        return self.cost_basis_price if self.cost_basis_price is not None else self.open_price


@dataclass(frozen=True)
class ParseStats:
    total_trade_tags: int = 0
    execution_trades: int = 0
    equities_trades: int = 0
    taxes: int = 0


@dataclass(frozen=True)
class ParsedStatement:
    info: StatementInfo
    account: AccountInformation | None = None
    cash_report: list[CashReportCurrencyRow] = field(default_factory=list)
    trades: list[RawTradeRecord] = field(default_factory=list)
    taxes: list[RawTaxRecord] = field(default_factory=list)
    open_positions: list[RawOpenPositionRecord] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


__all__ = [
    "AccountInformation",
    "CashReportCurrencyRow",
    "ParseStats",
    "ParsedStatement",
    "RawOpenPositionRecord",
    "RawTaxRecord",
    "RawTradeRecord",
    "StatementInfo",
]
