"""Validate raw trade executions and turn them into canonical ledger rows."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from ..flex.parser import parse_flex_date, parse_flex_timestamp
from ..flex.records import RawTaxRecord, RawTradeRecord
from ..models import TRADE_SIDES

SKIP_REASONS = (
    "missing_account_id",
    "missing_symbol",
    "missing_conid",
    "missing_side",
    "missing_quantity",
    "missing_price",
    "missing_key",
)


@dataclass
class NormalizedTrade:
    """Deduplicated, validated execution. ``quantity`` is always positive."""

    trade_key: str
    account_id: str
    symbol: str
    conid: int
    side: str
    quantity: Decimal
    trade_price: Decimal
    fees: Decimal
    currency: str
    fx_rate_to_base: Decimal
    exec_ts: datetime
    ib_exec_id: str | None = None
    trade_id: str | None = None
    trade_date: str | None = None
    listing_exchange: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def trade_key_for(ib_exec_id: str | None, trade_id: str | None) -> str | None:
    if ib_exec_id:
        return f"ibExec:{ib_exec_id}"
    if trade_id:
        return f"trade:{trade_id}"
    return None


def tax_by_trade(taxes: Iterable[RawTaxRecord]) -> dict[str, Decimal]:
    """Sum absolute tax amounts per trade id, or order id when the trade id is absent."""

    totals: dict[str, Decimal] = {}
    for tax in taxes:
        key = tax.trade_id or tax.order_id
        if not key:
            continue
        totals[key] = totals.get(key, Decimal("0")) + abs(tax.tax_amount or Decimal("0"))
    return totals


def execution_time(record: RawTradeRecord, *, now: datetime | None = None) -> datetime:
    return (
        parse_flex_timestamp(record.date_time)
        or parse_flex_date(record.trade_date)
        or now
        or datetime.now(timezone.utc)
    )


def _skip_reason(record: RawTradeRecord) -> str | None:
    if not record.account_id:
        return "missing_account_id"
    if not record.symbol:
        return "missing_symbol"
    if not record.conid:
        return "missing_conid"
    if (record.buy_sell or "").strip().upper() not in TRADE_SIDES:
        return "missing_side"
    if not record.quantity:
        return "missing_quantity"
    if not record.trade_price:
        return "missing_price"
    return None


def normalize_trades(
    trades: Sequence[RawTradeRecord],
    taxes: Sequence[RawTaxRecord],
    *,
    now: datetime | None = None,
) -> tuple[list[NormalizedTrade], dict[str, int]]:
    """Return canonical trades and a tally of skipped records per reason.

    Every input record is either normalized or counted under exactly one skip
    reason; the first failing check in ``SKIP_REASONS`` order wins.
    """

    skip_counts = {reason: 0 for reason in SKIP_REASONS}
    taxes_by_id = tax_by_trade(taxes)
    normalized: list[NormalizedTrade] = []

    for record in trades:
        reason = _skip_reason(record)
        trade_key = trade_key_for(record.ib_exec_id, record.trade_id)
        if reason is not None or trade_key is None:
            skip_counts[reason or "missing_key"] += 1
            continue

        matched_tax = Decimal("0")
        if record.trade_id and record.trade_id in taxes_by_id:
            matched_tax = taxes_by_id[record.trade_id]
        elif record.order_id and record.order_id in taxes_by_id:
            matched_tax = taxes_by_id[record.order_id]
        commission = abs(record.ib_commission or Decimal("0"))

        normalized.append(
            NormalizedTrade(
                trade_key=trade_key,
                ib_exec_id=record.ib_exec_id,
                trade_id=record.trade_id,
                account_id=record.account_id or "",
                symbol=record.symbol or "",
                conid=int(record.conid or 0),
                side=(record.buy_sell or "").strip().upper(),
                # sells are reported with negative quantities
                quantity=abs(record.quantity or Decimal("0")),
                trade_price=record.trade_price or Decimal("0"),
                fees=commission + abs(matched_tax),
                currency=(record.currency or "USD").upper(),
                fx_rate_to_base=record.fx_rate_to_base or Decimal("1"),
                exec_ts=execution_time(record, now=now),
                trade_date=record.trade_date,
                listing_exchange=record.listing_exchange,
                raw=record.to_json(),
            )
        )

    return normalized, skip_counts


__all__ = [
    "NormalizedTrade",
    "SKIP_REASONS",
    "execution_time",
    "normalize_trades",
    "tax_by_trade",
    "trade_key_for",
]
