"""Live statement sync: fetch, ledger upsert, position rebuild and response assembly."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import FlexPortfolioSettings, get_settings
from ..core.crypto import CredentialCipher
from ..db.upsert import batched, dialect_insert
from ..flex.parser import parse_flex_statement
from ..models import AccountHolder, Position, SyncRun, Trade, as_utc, utcnow
from ..schemas import PortfolioResponse
from .assembler import assemble_statement_view
from .credentials import holder_base_currency, resolve_credentials
from .normalize import NormalizedTrade, normalize_trades
from .positions import PositionCalc, rebuild_positions
from .snapshot_cache import StatementFetcher

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _trade_row(trade: NormalizedTrade) -> dict:
    return {
        "trade_key": trade.trade_key,
        "ib_exec_id": trade.ib_exec_id,
        "trade_id": trade.trade_id,
        "account_id": trade.account_id,
        "symbol": trade.symbol,
        "conid": trade.conid,
        "side": trade.side,
        "quantity": trade.quantity,
        "trade_price": trade.trade_price,
        "fees": trade.fees,
        "currency": trade.currency,
        "fx_rate_to_base": trade.fx_rate_to_base,
        "exec_ts": trade.exec_ts,
        "trade_date": trade.trade_date,
        "listing_exchange": trade.listing_exchange,
        "raw": trade.raw,
    }


def _ledger_trade(row: Trade) -> NormalizedTrade:
    return NormalizedTrade(
        trade_key=row.trade_key,
        ib_exec_id=row.ib_exec_id,
        trade_id=row.trade_id,
        account_id=row.account_id,
        symbol=row.symbol,
        conid=row.conid,
        side=row.side,
        quantity=row.quantity,
        trade_price=row.trade_price,
        fees=row.fees,
        currency=row.currency,
        fx_rate_to_base=row.fx_rate_to_base,
        exec_ts=as_utc(row.exec_ts),
        trade_date=row.trade_date,
        listing_exchange=row.listing_exchange,
        raw=row.raw or {},
    )


async def insert_trades(session: AsyncSession, trades: Sequence[NormalizedTrade]) -> int:
    """Insert trades keyed by ``trade_key``; existing keys are left untouched."""

    rows = list({trade.trade_key: _trade_row(trade) for trade in trades}.values())
    if not rows:
        return 0
    inserted = 0
    for batch in batched(rows):
        stmt = dialect_insert(session, Trade).values(batch).on_conflict_do_nothing(index_elements=[Trade.trade_key])
        result = await session.execute(stmt)
        inserted += max(result.rowcount or 0, 0)
    return inserted


async def load_ledger(session: AsyncSession, account_id: str | None = None) -> list[NormalizedTrade]:
    stmt = select(Trade).order_by(Trade.exec_ts.asc(), Trade.trade_key.asc())
    if account_id:
        stmt = stmt.where(Trade.account_id == account_id)
    result = await session.execute(stmt)
    return [_ledger_trade(row) for row in result.scalars()]


async def upsert_positions(session: AsyncSession, positions: Sequence[PositionCalc]) -> None:
    if not positions:
        return
    now = utcnow()
    rows = [
        {
            "account_id": pos.account_id,
            "conid": pos.conid,
            "symbol": pos.symbol,
            "currency": pos.currency,
            "quantity": pos.quantity,
            "avg_cost_base": pos.avg_cost_base,
            "date_added": pos.date_added,
            "updated_at": now,
        }
        for pos in positions
    ]
    for batch in batched(rows):
        insert_stmt = dialect_insert(session, Position).values(batch)
        excluded = insert_stmt.excluded
        await session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=[Position.account_id, Position.conid],
                set_={
                    "symbol": excluded.symbol,
                    "currency": excluded.currency,
                    "quantity": excluded.quantity,
                    "avg_cost_base": excluded.avg_cost_base,
                    "date_added": excluded.date_added,
                    "updated_at": excluded.updated_at,
                },
            )
        )


async def sync_portfolio(
    session: AsyncSession,
    holder_id: str,
    fetcher: StatementFetcher,
    cipher_factory: Callable[[], CredentialCipher],
    *,
    account_id: str | None = None,
    settings: FlexPortfolioSettings | None = None,
) -> PortfolioResponse:
    """Fetch a fresh statement and rebuild the ledger positions from it.

    Credentials come from the holder's stored values, or from the configured
    defaults when the holder has none. Every run is recorded as a ``SyncRun``.
    """

    settings = settings or get_settings()
    holder = await session.get(AccountHolder, holder_id)
    run = SyncRun(holder_id=holder_id, status="running", started_at=utcnow())
    session.add(run)
    await session.commit()
    run_id = run.id

    try:
        with tracer.start_as_current_span("portfolio.sync") as span:
            span.set_attribute("holder.id", holder_id)
            credentials = resolve_credentials(holder, cipher_factory, settings=settings, allow_default=True)
            document = await fetcher.fetch_statement(credentials.token, credentials.query_id)
            statement = parse_flex_statement(document)

            normalized, skip_counts = normalize_trades(statement.trades, statement.taxes)
            if account_id:
                normalized = [trade for trade in normalized if trade.account_id == account_id]
            inserted = await insert_trades(session, normalized)
            await session.commit()

            base_ccy = (
                (statement.account.currency if statement.account else None)
                or holder_base_currency(holder, settings)
            ).upper()
            ledger = await load_ledger(session, account_id)
            positions = rebuild_positions(base_ccy, ledger)
            await upsert_positions(session, positions)
            await session.commit()

            open_positions = [pos for pos in positions if not pos.is_flat]
            skipped = sum(skip_counts.values())
            counts = {
                "inserted_trades": inserted,
                "skipped_trades": skipped,
                "ledger_trades": len(ledger),
            }
            diagnostics = {
                "stages": {
                    "total_trade_tags": statement.stats.total_trade_tags,
                    "execution_trades": statement.stats.execution_trades,
                    "equities_trades": statement.stats.equities_trades,
                    "taxes": statement.stats.taxes,
                    "normalized": len(normalized),
                },
                "skipped": skip_counts,
                "endpoint": settings.ibkr_flex_endpoint,
            }
            span.set_attribute("sync.inserted_trades", inserted)
            span.set_attribute("sync.positions", len(open_positions))

            response = assemble_statement_view(
                statement,
                open_positions,
                sorted(normalized, key=lambda t: (t.exec_ts, t.trade_key), reverse=True),
                base_ccy=base_ccy,
                counts=counts,
                diagnostics=diagnostics,
            )
    except Exception as exc:
        await session.rollback()
        failed = await session.get(SyncRun, run_id)
        if failed is not None:
            failed.status = "failed"
            failed.ended_at = utcnow()
            failed.error = str(exc)
            await session.commit()
        logger.warning("Sync for holder %s failed: %s", holder_id, exc)
        raise

    finished = await session.get(SyncRun, run_id)
    if finished is not None:
        finished.status = "ok"
        finished.ended_at = utcnow()
        finished.counts = {**counts, "normalized": len(normalized), "positions": len(open_positions)}
        await session.commit()
    logger.info(
        "Sync for holder %s: %d new trades, %d skipped, %d open positions",
        holder_id,
        inserted,
        skipped,
        len(open_positions),
    )
    return response


__all__ = ["insert_trades", "load_ledger", "sync_portfolio", "upsert_positions"]
