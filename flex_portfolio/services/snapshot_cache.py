"""Stale-while-revalidate cache of open positions and cash balances per holder."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import FlexPortfolioSettings, get_settings
from ..core.crypto import CredentialCipher, get_cipher
from ..db import Database
from ..db.upsert import batched, dialect_insert
from ..errors import FlexPortfolioError
from ..flex.parser import parse_flex_statement, parse_flex_timestamp
from ..flex.records import CashReportCurrencyRow, RawOpenPositionRecord
from ..models import AccountHolder, CashBalance, OpenPositionSnapshot, as_utc, utcnow
from .credentials import get_holder, holder_base_currency, resolve_credentials

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SNAPSHOT_ASSET_CATEGORIES = frozenset({"STK", "ETF", "CFD", "OPT", "FUT", "WAR", "BOND", "FUND", "CASH"})


class StatementFetcher(Protocol):
    async def fetch_statement(self, token: str, query_id: str) -> str: ...


@dataclass
class CachedSnapshot:
    holder_id: str
    base_currency: str
    positions: list[OpenPositionSnapshot] = field(default_factory=list)
    cash_balances: list[CashBalance] = field(default_factory=list)
    last_updated: datetime | None = None
    stale: bool = True


@dataclass(frozen=True)
class RefreshResult:
    updated: int
    cash_rows: int = 0


def is_stale(last_updated: datetime | None, ttl: timedelta, *, now: datetime | None = None) -> bool:
    if last_updated is None:
        return True
    now = now or utcnow()
    return now - as_utc(last_updated) > ttl


def select_snapshot_positions(records: Iterable[RawOpenPositionRecord]) -> list[RawOpenPositionRecord]:
    """Keep allowlisted rows with a conid and symbol, one per conid.

    Summary rows win over ``LOT`` rows for the same conid.
    """

    chosen: dict[int, RawOpenPositionRecord] = {}
    for record in records:
        category = (record.asset_category or "").upper()
        if category not in SNAPSHOT_ASSET_CATEGORIES or record.conid is None or not record.symbol:
            continue
        current = chosen.get(record.conid)
        if current is not None and (record.level_of_detail or "").upper() == "LOT":
            continue
        chosen[record.conid] = record
    return list(chosen.values())


def _long_short(record: RawOpenPositionRecord) -> str:
    side = (record.side or "").strip().lower()
    if side in {"long", "short"}:
        return side
    return "short" if (record.position or Decimal("0")) < 0 else "long"


def _position_values(
    holder_id: str,
    record: RawOpenPositionRecord,
    *,
    base_ccy: str,
    as_of: datetime,
    now: datetime,
) -> dict:
    currency = (record.currency or base_ccy).upper()
    date_open = record.open_date_time or record.holding_period_date_time
    return {
        "holder_id": holder_id,
        "account_id": record.account_id,
        "conid": record.conid,
        "symbol": record.symbol,
        "name": record.description,
        "currency": currency,
        "qty": record.position or Decimal("0"),
        "long_short": _long_short(record),
        "unit_mark_price": record.mark_price,
        "unit_cost_basis_price": record.unit_cost_basis_price,
        "total_cost_basis_money": record.cost_basis_money,
        "position_value": record.position_value,
        "pos_ccy": currency,
        "fx_to_base": record.fx_rate_to_base,
        "report_date": record.report_date,
        "date_open": date_open,
        "date_added": parse_flex_timestamp(date_open) or now,
        "last_price_asof": as_of,
        "updated_at": now,
    }


def _cash_values(holder_id: str, rows: Iterable[CashReportCurrencyRow], now: datetime) -> list[dict]:
    by_key: dict[tuple[str, str], dict] = {}
    for row in rows:
        currency = (row.currency or "").strip().upper()
        if not currency:
            continue
        level = row.level_of_detail or ""
        by_key[(currency, level)] = {
            "holder_id": holder_id,
            "account_id": row.account_id,
            "currency": currency,
            "level_of_detail": level,
            "ending_cash": row.ending_cash,
            "ending_settled_cash": row.ending_settled_cash,
            "updated_at": now,
        }
    return list(by_key.values())


async def _upsert_positions(session: AsyncSession, holder_id: str, values: list[dict]) -> None:
    updatable = [
        "account_id",
        "symbol",
        "name",
        "currency",
        "qty",
        "long_short",
        "unit_mark_price",
        "unit_cost_basis_price",
        "total_cost_basis_money",
        "position_value",
        "pos_ccy",
        "fx_to_base",
        "report_date",
        "date_open",
        "last_price_asof",
        "updated_at",
    ]
    for batch in batched(values):
        insert_stmt = dialect_insert(session, OpenPositionSnapshot).values(batch)
        excluded = insert_stmt.excluded
        await session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=[OpenPositionSnapshot.holder_id, OpenPositionSnapshot.conid],
                set_={name: getattr(excluded, name) for name in updatable},
            )
        )

    sweep = delete(OpenPositionSnapshot).where(OpenPositionSnapshot.holder_id == holder_id)
    kept = [v["conid"] for v in values]
    if kept:
        sweep = sweep.where(OpenPositionSnapshot.conid.notin_(kept))
    await session.execute(sweep)


async def _upsert_cash(session: AsyncSession, holder_id: str, values: list[dict]) -> None:
    for batch in batched(values):
        insert_stmt = dialect_insert(session, CashBalance).values(batch)
        excluded = insert_stmt.excluded
        await session.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=[CashBalance.holder_id, CashBalance.currency, CashBalance.level_of_detail],
                set_={
                    "account_id": excluded.account_id,
                    "ending_cash": excluded.ending_cash,
                    "ending_settled_cash": excluded.ending_settled_cash,
                    "updated_at": excluded.updated_at,
                },
            )
        )

    kept = {(v["currency"], v["level_of_detail"]) for v in values}
    existing = await session.execute(
        select(CashBalance.id, CashBalance.currency, CashBalance.level_of_detail).where(
            CashBalance.holder_id == holder_id
        )
    )
    stale_ids = [row.id for row in existing if (row.currency, row.level_of_detail) not in kept]
    if stale_ids:
        await session.execute(delete(CashBalance).where(CashBalance.id.in_(stale_ids)))


class SnapshotCache:
    """Serve cached snapshots immediately and refresh them in the background.

    At most one refresh runs per holder; the in-flight set is owned by this
    instance and lives as long as the process.
    """

    def __init__(
        self,
        database: Database,
        fetcher: StatementFetcher,
        *,
        cipher: CredentialCipher | None = None,
        settings: FlexPortfolioSettings | None = None,
    ) -> None:
        self._database = database
        self._fetcher = fetcher
        self._cipher = cipher
        self._settings = settings or get_settings()
        self._refreshing: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.snapshot_ttl_min)

    def is_refreshing(self, holder_id: str) -> bool:
        return holder_id in self._refreshing

    def _get_cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def get(self, holder_id: str) -> CachedSnapshot:
        async with self._database.session() as session:
            holder = await session.get(AccountHolder, holder_id)
            base_ccy = holder_base_currency(holder, self._settings)
            # cash first: a failed read rolls back and expires anything already loaded
            try:
                cash = list(
                    (
                        await session.execute(
                            select(CashBalance)
                            .where(CashBalance.holder_id == holder_id)
                            .order_by(CashBalance.currency)
                        )
                    ).scalars()
                )
            except SQLAlchemyError:
                logger.warning("Cash balances unavailable for holder %s", holder_id, exc_info=True)
                await session.rollback()
                cash = []
            positions = list(
                (
                    await session.execute(
                        select(OpenPositionSnapshot)
                        .where(OpenPositionSnapshot.holder_id == holder_id)
                        .order_by(OpenPositionSnapshot.symbol)
                    )
                ).scalars()
            )

        stamps = [as_utc(row.updated_at) for row in (*positions, *cash) if row.updated_at is not None]
        last_updated = max(stamps) if stamps else None
        stale = is_stale(last_updated, self.ttl)
        if stale:
            self.schedule_refresh(holder_id)
        return CachedSnapshot(
            holder_id=holder_id,
            base_currency=base_ccy,
            positions=positions,
            cash_balances=cash,
            last_updated=last_updated,
            stale=stale,
        )

    def schedule_refresh(self, holder_id: str) -> bool:
        """Start a detached refresh unless one is already running for the holder."""

        if holder_id in self._refreshing:
            return False
        self._refreshing.add(holder_id)
        task = asyncio.create_task(self._background_refresh(holder_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _background_refresh(self, holder_id: str) -> None:
        try:
            result = await self._refresh_locked(holder_id)
            logger.info("Background refresh for holder %s updated %d positions", holder_id, result.updated)
        except FlexPortfolioError as exc:
            logger.warning("Background refresh for holder %s failed: %s", holder_id, exc)
        except Exception:
            logger.exception("Background refresh for holder %s crashed", holder_id)
        finally:
            self._refreshing.discard(holder_id)

    async def refresh(self, holder_id: str) -> RefreshResult:
        if holder_id in self._refreshing:
            logger.info("Refresh already in flight for holder %s", holder_id)
            return RefreshResult(updated=0)
        self._refreshing.add(holder_id)
        try:
            return await self._refresh_locked(holder_id)
        finally:
            self._refreshing.discard(holder_id)

    async def _refresh_locked(self, holder_id: str) -> RefreshResult:
        with tracer.start_as_current_span("snapshot_cache.refresh") as span:
            span.set_attribute("holder.id", holder_id)

            async with self._database.session() as session:
                holder = await get_holder(session, holder_id)
                base_ccy = holder_base_currency(holder, self._settings)
                credentials = resolve_credentials(holder, self._get_cipher, settings=self._settings)

            document = await self._fetcher.fetch_statement(credentials.token, credentials.query_id)
            statement = parse_flex_statement(document)

            now = utcnow()
            as_of = statement.info.generated_at or now
            positions = [
                _position_values(holder_id, record, base_ccy=base_ccy, as_of=as_of, now=now)
                for record in select_snapshot_positions(statement.open_positions)
            ]
            cash = _cash_values(holder_id, statement.cash_report, now)

            cash_written = 0
            async with self._database.session() as session:
                async with session.begin():
                    await _upsert_positions(session, holder_id, positions)
                    try:
                        async with session.begin_nested():
                            await _upsert_cash(session, holder_id, cash)
                        cash_written = len(cash)
                    except SQLAlchemyError:
                        logger.exception("Cash balance persistence failed for holder %s", holder_id)

            span.set_attribute("snapshot.positions", len(positions))
            span.set_attribute("snapshot.cash_rows", cash_written)
            logger.info(
                "Refreshed snapshot for holder %s: %d positions, %d cash rows",
                holder_id,
                len(positions),
                cash_written,
            )
            return RefreshResult(updated=len(positions), cash_rows=cash_written)

    async def aclose(self) -> None:
        """Wait for outstanding background refreshes."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "CachedSnapshot",
    "RefreshResult",
    "SNAPSHOT_ASSET_CATEGORIES",
    "SnapshotCache",
    "is_stale",
    "select_snapshot_positions",
]
