"""Combine positions, statement prices and cash rows into the portfolio response."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from ..flex.records import ParsedStatement, RawOpenPositionRecord
from ..schemas import AccountView, CashRowView, PortfolioResponse, PositionView, TradeView
from .normalize import NormalizedTrade
from .positions import PositionCalc

if TYPE_CHECKING:
    from .snapshot_cache import CachedSnapshot

BASE_SUMMARY = "BASE_SUMMARY"
CASH_TOLERANCE = Decimal("0.01")
NO_EXECUTIONS_WARNING = (
    "No equities executions found. Ensure your Flex Query includes Trades with "
    "levelOfDetail=EXECUTION and assetCategory STK/ETF."
)


class CashRow(Protocol):
    currency: str | None
    level_of_detail: str | None
    ending_cash: Decimal | None


@dataclass(frozen=True)
class CashReconciliation:
    server_total: Decimal | None
    local_total: Decimal
    total: Decimal
    approximate: bool
    warning: str | None = None


def _float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def median(values: Sequence[Decimal]) -> Decimal:
    ordered = sorted(values)
    if not ordered:
        raise ValueError("median() of an empty sequence")
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def derive_fx_rates(samples: Iterable[tuple[str | None, Decimal | None]], base_ccy: str) -> dict[str, Decimal]:
    """Median FX-to-base per currency; the base currency is pinned to 1."""

    by_currency: dict[str, list[Decimal]] = {}
    for currency, fx in samples:
        code = (currency or "").upper()
        if not code or fx is None or not fx.is_finite():
            continue
        by_currency.setdefault(code, []).append(fx)
    rates = {code: median(values) for code, values in by_currency.items()}
    rates[base_ccy.upper()] = Decimal("1")
    return rates


def market_value(position_value: Decimal | None, mark_price: Decimal | None, quantity: Decimal) -> Decimal | None:
    if position_value is not None:
        return position_value
    if mark_price is not None:
        return mark_price * quantity
    return None


def compute_weights(values: Sequence[Decimal | None]) -> list[Decimal | None]:
    total = sum((v for v in values if v is not None), Decimal("0"))
    if total == 0:
        return [None for _ in values]
    return [v / total if v is not None else None for v in values]


def reconcile_cash(rows: Iterable[CashRow], fx_rates: dict[str, Decimal], base_ccy: str) -> CashReconciliation:
    """Sum per-currency cash in base currency and cross-check the ``BASE_SUMMARY`` row."""

    base = base_ccy.upper()
    server_total: Decimal | None = None
    local_total = Decimal("0")
    unconverted: list[str] = []
    for row in rows:
        code = (row.currency or "").upper()
        if not code:
            continue
        if code == BASE_SUMMARY:
            if row.ending_cash is not None:
                server_total = row.ending_cash
            continue
        if row.ending_cash is None:
            continue
        rate = Decimal("1") if code == base else fx_rates.get(code)
        if rate is None:
            unconverted.append(code)
            continue
        local_total += row.ending_cash * rate

    warning = None
    if unconverted:
        warning = f"No FX rate for {', '.join(sorted(set(unconverted)))}; cash total is approximate"
    if server_total is not None and abs(server_total - local_total) > CASH_TOLERANCE:
        warning = (
            f"Cash total {local_total:.2f} {base} differs from reported {server_total:.2f}; "
            "converted figures are approximate"
        )
    return CashReconciliation(
        server_total=server_total,
        local_total=local_total,
        total=server_total if server_total is not None else local_total,
        approximate=warning is not None,
        warning=warning,
    )


def _cash_views(rows: Iterable[Any]) -> list[CashRowView]:
    views = []
    for row in rows:
        code = (row.currency or "").upper()
        if not code or code == BASE_SUMMARY:
            continue
        views.append(
            CashRowView(
                currency=code,
                ending_cash=_float(row.ending_cash),
                ending_settled_cash=_float(row.ending_settled_cash),
                level_of_detail=row.level_of_detail or None,
            )
        )
    return views


def _price_status(mark: Decimal | None, stale: bool) -> str:
    if mark is None:
        return "unavailable"
    return "stale" if stale else "fresh"


def _pct(numerator: Decimal | None, denominator: Decimal | None) -> Decimal | None:
    if numerator is None or denominator is None or denominator == 0:
        return None
    return numerator / denominator - 1


def assemble_cached_view(snapshot: "CachedSnapshot") -> PortfolioResponse:
    """Build the response for a cached open-position snapshot."""

    base_ccy = snapshot.base_currency
    rows = snapshot.positions
    mv_local = [market_value(r.position_value, r.unit_mark_price, r.qty) for r in rows]
    mv_base = [mv * (r.fx_to_base or Decimal("1")) if mv is not None else None for mv, r in zip(mv_local, rows)]
    weights = compute_weights(mv_base)

    positions: list[PositionView] = []
    for row, mv, mvb, weight in zip(rows, mv_local, mv_base, weights):
        mark = row.unit_mark_price
        unit_cost = row.unit_cost_basis_price
        if row.total_cost_basis_money is not None and row.position_value is not None:
            pl_abs = row.position_value - row.total_cost_basis_money
        elif mark is not None and unit_cost is not None:
            pl_abs = (mark - unit_cost) * row.qty
        else:
            pl_abs = None
        positions.append(
            PositionView(
                account_id=row.account_id or "",
                symbol=row.symbol,
                conid=row.conid,
                name=row.name,
                side="long" if row.long_short == "long" else "short",
                qty=float(row.qty),
                avg_cost=_float(unit_cost),
                currency=row.currency,
                base_ccy=base_ccy,
                current_price=_float(mark),
                current_price_ccy=row.pos_ccy or row.currency,
                price_status=_price_status(row.unit_mark_price, snapshot.stale),
                as_of_price=row.last_price_asof,
                mv=_float(mv),
                mv_base=_float(mvb),
                pl_abs=_float(pl_abs),
                pl_pct=_float(_pct(mark, unit_cost)),
                weight_pct=_float(weight),
                date_added=row.date_added,
                unit_mark_price=_float(mark),
                unit_cost_basis_price=_float(unit_cost),
                total_cost_basis_money=_float(row.total_cost_basis_money),
                position_value=_float(row.position_value),
                pos_ccy=row.pos_ccy or row.currency,
                fx_to_base=_float(row.fx_to_base),
                report_date=row.report_date,
                date_open=row.date_open,
            )
        )

    fx_rates = derive_fx_rates(((r.pos_ccy or r.currency, r.fx_to_base) for r in rows), base_ccy)
    cash = reconcile_cash(snapshot.cash_balances, fx_rates, base_ccy)
    return PortfolioResponse(
        base_ccy=base_ccy,
        as_of_statement=snapshot.last_updated,
        positions=positions,
        counts={"positions": len(positions), "cash_rows": len(snapshot.cash_balances)},
        cash_report=_cash_views(snapshot.cash_balances),
        cash_base_summary=_float(cash.server_total),
        cash_base_total=_float(cash.total),
        cash_approximate=cash.approximate,
        fx_rates_derived={code: float(rate) for code, rate in fx_rates.items()},
        account=AccountView(currency=base_ccy),
        stale=snapshot.stale,
        warnings=[cash.warning] if cash.warning else [],
    )


def assemble_statement_view(
    statement: ParsedStatement,
    positions: Sequence[PositionCalc],
    trades: Sequence[NormalizedTrade],
    *,
    base_ccy: str,
    counts: dict[str, int] | None = None,
    diagnostics: dict[str, Any] | None = None,
) -> PortfolioResponse:
    """Build the response for reconciled positions priced from the statement's open positions."""

    reporting_ccy = ((statement.account.currency if statement.account else None) or base_ccy).upper()
    as_of = statement.info.generated_at
    open_by_conid: dict[int, RawOpenPositionRecord] = {
        op.conid: op for op in statement.open_positions if op.conid is not None
    }

    def price_base(conid: int) -> Decimal | None:
        op = open_by_conid.get(conid)
        if op is None or op.mark_price is None:
            return None
        return op.mark_price * (op.fx_rate_to_base or Decimal("1"))

    prices = [price_base(p.conid) for p in positions]
    mvs = [price * p.quantity if price is not None else None for price, p in zip(prices, positions)]
    weights = compute_weights(mvs)

    views: list[PositionView] = []
    for pos, price, mv, weight in zip(positions, prices, mvs, weights):
        op = open_by_conid.get(pos.conid)
        views.append(
            PositionView(
                account_id=pos.account_id,
                symbol=pos.symbol,
                conid=pos.conid,
                name=op.description if op else None,
                side="long" if pos.quantity >= 0 else "short",
                qty=float(pos.quantity),
                avg_cost=float(pos.avg_cost_base),
                currency=pos.currency,
                base_ccy=base_ccy,
                current_price=_float(price),
                current_price_ccy=base_ccy,
                price_status="fresh" if price is not None else "unavailable",
                as_of_price=as_of,
                mv=_float(mv),
                mv_base=_float(mv),
                pl_abs=_float((price - pos.avg_cost_base) * pos.quantity) if price is not None else None,
                pl_pct=_float(_pct(price, pos.avg_cost_base)),
                weight_pct=_float(weight),
                date_added=pos.date_added,
                unit_mark_price=_float(op.mark_price) if op else None,
                unit_cost_basis_price=_float(op.unit_cost_basis_price) if op else None,
                total_cost_basis_money=_float(op.cost_basis_money) if op else None,
                position_value=_float(
                    market_value(op.position_value, op.mark_price, pos.quantity) if op else None
                ),
                pos_ccy=(op.currency if op and op.currency else pos.currency),
                fx_to_base=_float(op.fx_rate_to_base) if op and op.fx_rate_to_base is not None else 1.0,
                report_date=op.report_date if op else None,
                date_open=(op.open_date_time or op.holding_period_date_time) if op else None,
            )
        )

    trade_views = []
    for trade in trades:
        price = price_base(trade.conid)
        trade_views.append(
            TradeView(
                id=trade.trade_key,
                date=trade.exec_ts,
                account_id=trade.account_id,
                symbol=trade.symbol,
                conid=trade.conid,
                side=trade.side,
                qty=float(trade.quantity),
                fill_price=float(trade.trade_price),
                fees=float(trade.fees),
                currency=trade.currency,
                fx_rate_to_base=float(trade.fx_rate_to_base),
                listing_exchange=trade.listing_exchange,
                current_price=_float(price),
                current_price_ccy=base_ccy,
                as_of_price=as_of,
                price_status="fresh" if price is not None else "unavailable",
                raw=trade.raw,
            )
        )

    fx_rates = derive_fx_rates(
        ((op.currency, op.fx_rate_to_base) for op in statement.open_positions), reporting_ccy
    )
    cash = reconcile_cash(statement.cash_report, fx_rates, reporting_ccy)
    warnings = []
    if statement.stats.equities_trades == 0:
        warnings.append(NO_EXECUTIONS_WARNING)
    if cash.warning:
        warnings.append(cash.warning)

    account = None
    if statement.account is not None:
        account = AccountView(
            account_id=statement.account.account_id,
            currency=statement.account.currency,
            name=statement.account.name,
            account_type=statement.account.account_type,
            customer_type=statement.account.customer_type,
        )

    return PortfolioResponse(
        base_ccy=reporting_ccy,
        as_of_statement=as_of,
        positions=views,
        trades=trade_views,
        counts={"parsed_trades": len(trades), "positions": len(views), **(counts or {})},
        cash_report=_cash_views(statement.cash_report),
        cash_base_summary=_float(cash.server_total),
        cash_base_total=_float(cash.total),
        cash_approximate=cash.approximate,
        fx_rates_derived={code: float(rate) for code, rate in fx_rates.items()},
        account=account,
        stale=False,
        warnings=warnings,
        diagnostics=diagnostics,
    )


__all__ = [
    "BASE_SUMMARY",
    "CASH_TOLERANCE",
    "CashReconciliation",
    "assemble_cached_view",
    "assemble_statement_view",
    "compute_weights",
    "derive_fx_rates",
    "market_value",
    "median",
    "reconcile_cash",
]
