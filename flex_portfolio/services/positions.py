"""Average-cost position reconciliation from canonical trades."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .normalize import NormalizedTrade

ZERO = Decimal("0")


@dataclass
class PositionCalc:
    account_id: str
    conid: int
    symbol: str
    currency: str
    quantity: Decimal = ZERO
    avg_cost_base: Decimal = ZERO
    date_added: datetime | None = None

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0

    def _clear(self) -> None:
        self.quantity = ZERO
        self.avg_cost_base = ZERO
        self.date_added = None


def sort_chronologically(trades: Iterable[NormalizedTrade]) -> list[NormalizedTrade]:
    """Order trades by execution time, tie-broken by trade key."""

    return sorted(trades, key=lambda t: (t.exec_ts, t.trade_key))


def _apply_buy(pos: PositionCalc, trade: NormalizedTrade, price_base: Decimal, fees_base: Decimal, base_ccy: str) -> None:
    qty = trade.quantity
    if pos.quantity >= 0:
        new_qty = pos.quantity + qty
        total_cost = pos.avg_cost_base * abs(pos.quantity) + (qty * price_base + fees_base)
        pos.quantity = new_qty
        pos.avg_cost_base = total_cost / abs(new_qty) if new_qty != 0 else ZERO
        if pos.date_added is None:
            pos.date_added = trade.exec_ts
        return

    cover_qty = min(qty, abs(pos.quantity))
    remainder = qty - cover_qty
    if remainder > 0:
        # short fully covered, the excess opens a new long
        pos.quantity = remainder
        pos.avg_cost_base = (remainder * price_base + fees_base) / remainder
        pos.currency = base_ccy
        pos.date_added = trade.exec_ts
        return
    pos.quantity = pos.quantity + cover_qty
    if pos.quantity == 0:
        pos._clear()


def _apply_sell(pos: PositionCalc, trade: NormalizedTrade, price_base: Decimal, fees_base: Decimal) -> None:
    qty = trade.quantity
    if pos.quantity <= 0:
        new_qty = pos.quantity - qty
        proceeds_net = qty * price_base - fees_base
        total_proceeds = pos.avg_cost_base * abs(pos.quantity) + proceeds_net
        pos.quantity = new_qty
        pos.avg_cost_base = total_proceeds / abs(new_qty) if new_qty != 0 else ZERO
        if pos.date_added is None:
            pos.date_added = trade.exec_ts
        return

    sell_qty = min(qty, pos.quantity)
    remainder = qty - sell_qty
    pos.quantity = pos.quantity - sell_qty
    if remainder > 0:
        # long fully closed, the excess opens a new short; sell fees stay out of this basis
        pos.quantity = -remainder
        pos.avg_cost_base = (remainder * price_base) / remainder
        pos.date_added = trade.exec_ts
        return
    if pos.quantity == 0:
        pos._clear()


def rebuild_positions(base_currency: str, trades: Iterable[NormalizedTrade]) -> list[PositionCalc]:
    """Fold trades, in the order given, into one position per (account, conid).

    Prices and fees are converted with each trade's own FX-to-base rate, so
    ``avg_cost_base`` is expressed in ``base_currency``. Callers are expected
    to pass trades in chronological order (see ``sort_chronologically``).
    """

    base_ccy = base_currency.upper()
    book: dict[tuple[str, int], PositionCalc] = {}
    for trade in trades:
        key = (trade.account_id, trade.conid)
        pos = book.get(key)
        if pos is None:
            pos = PositionCalc(
                account_id=trade.account_id,
                conid=trade.conid,
                symbol=trade.symbol,
                currency=trade.currency,
            )
            book[key] = pos
        fx = trade.fx_rate_to_base or Decimal("1")
        price_base = trade.trade_price * fx
        fees_base = (trade.fees or ZERO) * fx
        if trade.side == "BUY":
            _apply_buy(pos, trade, price_base, fees_base, base_ccy)
        else:
            _apply_sell(pos, trade, price_base, fees_base)
    return list(book.values())


__all__ = ["PositionCalc", "rebuild_positions", "sort_chronologically"]
