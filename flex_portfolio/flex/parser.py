"""Parse Flex Query XML statements into typed records."""

from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from ..errors import ParseError
from .records import (
    AccountInformation,
    CashReportCurrencyRow,
    ParsedStatement,
    ParseStats,
    RawOpenPositionRecord,
    RawTaxRecord,
    RawTradeRecord,
    StatementInfo,
)

logger = logging.getLogger(__name__)

TRADE_CATEGORIES = frozenset({"STK", "ETF"})
EXECUTION = "EXECUTION"

_TIMESTAMP_RE = re.compile(r"^(\d{4})(\d{2})(\d{2});(\d{2})(\d{2})(\d{2})$")
_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")


def parse_flex_timestamp(value: str | None) -> datetime | None:
    """Parse ``YYYYMMDD;HHMMSS`` (or ISO-8601) as an aware UTC datetime."""

    if not value:
        return None
    text = value.strip()
    match = _TIMESTAMP_RE.match(text)
    if match:
        try:
            return datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
        except ValueError:
            return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_flex_date(value: str | None) -> datetime | None:
    """Parse ``YYYYMMDD`` as UTC midnight."""

    if not value:
        return None
    match = _DATE_RE.match(value.strip())
    if not match:
        return None
    try:
        return datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
    except ValueError:
        return None


def _text(element: ET.Element, *names: str) -> str | None:
    for name in names:
        raw = element.get(name)
        if raw is None:
            continue
        value = raw.strip()
        if value:
            return value
    return None


def _decimal(element: ET.Element, *names: str) -> Decimal | None:
    raw = _text(element, *names)
    if raw is None:
        return None
    try:
        value = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _int(element: ET.Element, *names: str) -> int | None:
    raw = _text(element, *names)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        try:
            number = float(raw)
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None


def _upper(value: str | None) -> str:
    return (value or "").upper()


def _children(parent: ET.Element | None, section: str, tag: str) -> list[ET.Element]:
    if parent is None:
        return []
    return [child for container in parent.findall(section) for child in container.findall(tag)]


def _statement_element(root: ET.Element) -> ET.Element | None:
    if root.tag == "FlexStatement":
        return root
    return root.find(".//FlexStatement")


def _trade(el: ET.Element) -> RawTradeRecord:
    return RawTradeRecord(
        trade_id=_text(el, "tradeID", "tradeId"),
        ib_exec_id=_text(el, "ibExecID", "ibExecId"),
        order_id=_text(el, "ibOrderID", "orderID", "orderId"),
        account_id=_text(el, "accountId"),
        trade_date=_text(el, "tradeDate"),
        date_time=_text(el, "dateTime"),
        settle_date_target=_text(el, "settleDateTarget"),
        buy_sell=_text(el, "buySell"),
        quantity=_decimal(el, "quantity"),
        trade_price=_decimal(el, "tradePrice"),
        ib_commission=_decimal(el, "ibCommission"),
        net_cash=_decimal(el, "netCash"),
        cost=_decimal(el, "cost"),
        fifo_pnl_realized=_decimal(el, "fifoPnlRealized"),
        mtm_pnl=_decimal(el, "mtmPnl"),
        symbol=_text(el, "symbol"),
        description=_text(el, "description"),
        conid=_int(el, "conid"),
        asset_category=_text(el, "assetCategory"),
        sub_category=_text(el, "subCategory"),
        listing_exchange=_text(el, "listingExchange"),
        level_of_detail=_text(el, "levelOfDetail"),
        currency=_text(el, "currency"),
        fx_rate_to_base=_decimal(el, "fxRateToBase") or Decimal("1"),
    )


def _tax(el: ET.Element) -> RawTaxRecord:
    return RawTaxRecord(
        trade_id=_text(el, "tradeID", "tradeId"),
        order_id=_text(el, "orderID", "orderId", "ibOrderID"),
        tax_description=_text(el, "taxDescription"),
        tax_amount=_decimal(el, "taxAmount"),
        currency=_text(el, "currency"),
        conid=_int(el, "conid"),
        symbol=_text(el, "symbol"),
        date=_text(el, "date"),
    )


def _open_position(el: ET.Element) -> RawOpenPositionRecord:
    return RawOpenPositionRecord(
        account_id=_text(el, "accountId"),
        currency=_text(el, "currency"),
        fx_rate_to_base=_decimal(el, "fxRateToBase"),
        asset_category=_text(el, "assetCategory"),
        sub_category=_text(el, "subCategory"),
        symbol=_text(el, "symbol"),
        description=_text(el, "description"),
        conid=_int(el, "conid"),
        listing_exchange=_text(el, "listingExchange"),
        report_date=_text(el, "reportDate"),
        position=_decimal(el, "position"),
        mark_price=_decimal(el, "markPrice"),
        position_value=_decimal(el, "positionValue"),
        open_price=_decimal(el, "openPrice"),
        cost_basis_price=_decimal(el, "costBasisPrice"),
        cost_basis_money=_decimal(el, "costBasisMoney"),
        side=_text(el, "side"),
        level_of_detail=_text(el, "levelOfDetail"),
        open_date_time=_text(el, "openDateTime"),
        holding_period_date_time=_text(el, "holdingPeriodDateTime"),
    )


def _cash_row(el: ET.Element) -> CashReportCurrencyRow:
    return CashReportCurrencyRow(
        account_id=_text(el, "accountId"),
        currency=_text(el, "currency"),
        level_of_detail=_text(el, "levelOfDetail"),
        from_date=_text(el, "fromDate"),
        to_date=_text(el, "toDate"),
        ending_cash=_decimal(el, "endingCash"),
        ending_settled_cash=_decimal(el, "endingSettledCash"),
    )


def parse_flex_statement(document: str) -> ParsedStatement:
    """Parse a Flex Query response into typed collections.

    Only the first ``FlexStatement`` is read. Sections missing from the
    document produce empty lists. Trades are limited to ``EXECUTION`` rows in
    the ``STK``/``ETF`` categories; the counts at each filter stage are kept in
    ``stats``. Open positions are returned unfiltered.
    """

    if not document or not document.strip():
        raise ParseError("Statement document is empty")
    try:
        root = ET.fromstring(document.strip())
    except ET.ParseError as exc:
        raise ParseError(f"Malformed statement document: {exc}") from exc

    statement = _statement_element(root)
    if statement is None:
        logger.warning("Statement document has no FlexStatement element (root=%s)", root.tag)
        return ParsedStatement(info=StatementInfo())

    when_generated = _text(statement, "whenGenerated")
    info = StatementInfo(
        account_id=_text(statement, "accountId"),
        from_date=_text(statement, "fromDate"),
        to_date=_text(statement, "toDate"),
        when_generated=when_generated,
        generated_at=parse_flex_timestamp(when_generated),
    )

    account_el = statement.find("AccountInformation")
    account = None
    if account_el is not None:
        account = AccountInformation(
            account_id=_text(account_el, "accountId"),
            currency=_text(account_el, "currency"),
            name=_text(account_el, "name"),
            account_type=_text(account_el, "accountType"),
            customer_type=_text(account_el, "customerType"),
            master_name=_text(account_el, "masterName"),
        )

    cash_report = [_cash_row(el) for el in _children(statement, "CashReport", "CashReportCurrency")]

    trade_elements = _children(statement, "Trades", "Trade")
    executions = [el for el in trade_elements if _upper(el.get("levelOfDetail")) == EXECUTION]
    equities = [el for el in executions if _upper(el.get("assetCategory")) in TRADE_CATEGORIES]
    trades = [_trade(el) for el in equities]

    taxes = [_tax(el) for el in _children(statement, "TransactionTaxes", "TransactionTax")]
    open_positions = [_open_position(el) for el in _children(statement, "OpenPositions", "OpenPosition")]

    stats = ParseStats(
        total_trade_tags=len(trade_elements),
        execution_trades=len(executions),
        equities_trades=len(equities),
        taxes=len(taxes),
    )
    logger.debug(
        "Parsed statement for %s: %d trade tags, %d executions, %d equities, %d open positions",
        info.account_id,
        stats.total_trade_tags,
        stats.execution_trades,
        stats.equities_trades,
        len(open_positions),
    )
    return ParsedStatement(
        info=info,
        account=account,
        cash_report=cash_report,
        trades=trades,
        taxes=taxes,
        open_positions=open_positions,
        stats=stats,
    )


__all__ = [
    "EXECUTION",
    "TRADE_CATEGORIES",
    "parse_flex_date",
    "parse_flex_statement",
    "parse_flex_timestamp",
]
