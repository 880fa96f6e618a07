import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from flex_portfolio.db import Database
from flex_portfolio.errors import CredentialsMissing, FlexError, HolderNotFound
from flex_portfolio.models import AccountHolder
from flex_portfolio.services.assembler import assemble_cached_view
from flex_portfolio.services.credentials import save_flex_credentials
from flex_portfolio.services.snapshot_cache import SnapshotCache, is_stale, select_snapshot_positions
from flex_portfolio.flex.records import RawOpenPositionRecord

from flex_samples import StubFetcher, cash_row_xml, open_position_xml, statement_xml

FIRST = statement_xml(
    open_positions=[
        open_position_xml(),
        open_position_xml(symbol="ES", conid="495512557", category="FUT", position="-1", side="Short"),
        open_position_xml(symbol="GOLD", conid="77", category="CMDTY"),
        open_position_xml(symbol="SAP", conid="14204", currency="EUR", fx="1.1", value="1320", mark="132"),
    ],
    cash_rows=[
        cash_row_xml("USD", "100"),
        cash_row_xml("EUR", "50"),
        cash_row_xml("BASE_SUMMARY", "155", level="BaseCurrency"),
    ],
)
SECOND = statement_xml(
    open_positions=[open_position_xml(mark="13", value="1300")],
    cash_rows=[cash_row_xml("USD", "120")],
)


async def _database(settings) -> Database:
    database = Database(settings.database_url)
    await database.create_all()
    return database


async def _holder_with_credentials(database: Database, cipher, holder_id: str = "user-1") -> None:
    async with database.session() as session:
        await save_flex_credentials(session, holder_id, cipher, flex_token="token-12345", query_id="987654")


def test_is_stale():
    now = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)
    ttl = timedelta(minutes=15)

    assert is_stale(None, ttl, now=now)
    assert not is_stale(now - timedelta(minutes=5), ttl, now=now)
    assert is_stale(now - timedelta(minutes=16), ttl, now=now)
    # naive timestamps read back from SQLite are UTC
    assert not is_stale(datetime(2024, 1, 5, 11, 50), ttl, now=now)


def test_select_snapshot_positions_prefers_summary_rows():
    rows = [
        RawOpenPositionRecord(conid=1, symbol="A", asset_category="STK", level_of_detail="SUMMARY", position=Decimal("5")),
        RawOpenPositionRecord(conid=1, symbol="A", asset_category="STK", level_of_detail="LOT", position=Decimal("2")),
        RawOpenPositionRecord(conid=2, symbol=None, asset_category="STK"),
        RawOpenPositionRecord(conid=None, symbol="B", asset_category="STK"),
        RawOpenPositionRecord(conid=3, symbol="C", asset_category="cash"),
    ]

    selected = select_snapshot_positions(rows)

    assert [(r.conid, r.position) for r in selected] == [(1, Decimal("5")), (3, None)]


async def test_refresh_upserts_and_sweeps(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    fetcher = StubFetcher(FIRST, SECOND)
    cache = SnapshotCache(database, fetcher, cipher=cipher, settings=settings)

    first = await cache.refresh("user-1")
    snapshot = await cache.get("user-1")

    assert first.updated == 3
    assert fetcher.calls == [("token-12345", "987654")]
    assert sorted(p.symbol for p in snapshot.positions) == ["AAPL", "ES", "SAP"]
    es = next(p for p in snapshot.positions if p.symbol == "ES")
    assert es.long_short == "short"
    assert es.qty == Decimal("-1")
    assert sorted(c.currency for c in snapshot.cash_balances) == ["BASE_SUMMARY", "EUR", "USD"]
    assert snapshot.stale is False
    assert snapshot.last_updated is not None
    assert not cache.is_refreshing("user-1")

    second = await cache.refresh("user-1")
    snapshot = await cache.get("user-1")

    assert second.updated == 1
    assert [p.symbol for p in snapshot.positions] == ["AAPL"]
    assert snapshot.positions[0].unit_mark_price == Decimal("13")
    assert [(c.currency, c.ending_cash) for c in snapshot.cash_balances] == [("USD", Decimal("120"))]

    await cache.aclose()
    await database.dispose()


async def test_refresh_requires_holder_and_credentials(settings, cipher):
    database = await _database(settings)
    async with database.session() as session:
        session.add(AccountHolder(id="bare"))
        await session.commit()
    cache = SnapshotCache(database, StubFetcher(FIRST), cipher=cipher, settings=settings)

    with pytest.raises(HolderNotFound):
        await cache.refresh("nobody")
    with pytest.raises(CredentialsMissing):
        await cache.refresh("bare")
    assert not cache.is_refreshing("bare")

    await database.dispose()


async def test_fetch_errors_propagate_and_release_guard(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    cache = SnapshotCache(
        database,
        StubFetcher(error=FlexError("Flex token expired", "TOKEN_EXPIRED")),
        cipher=cipher,
        settings=settings,
    )

    with pytest.raises(FlexError) as excinfo:
        await cache.refresh("user-1")

    assert excinfo.value.needs_reauth
    assert not cache.is_refreshing("user-1")
    await database.dispose()


class _BlockingFetcher:
    def __init__(self, document: str) -> None:
        self.document = document
        self.calls = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_statement(self, token: str, query_id: str) -> str:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self.document


async def test_stale_reads_trigger_single_background_refresh(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    fetcher = _BlockingFetcher(FIRST)
    cache = SnapshotCache(database, fetcher, cipher=cipher, settings=settings)

    first = await cache.get("user-1")
    second = await cache.get("user-1")

    assert first.stale and second.stale
    assert first.positions == []
    assert cache.is_refreshing("user-1")
    await asyncio.wait_for(fetcher.started.wait(), timeout=5)

    concurrent = await cache.refresh("user-1")
    assert concurrent.updated == 0

    fetcher.release.set()
    await cache.aclose()

    assert fetcher.calls == 1
    assert not cache.is_refreshing("user-1")
    fresh = await cache.get("user-1")
    assert fresh.stale is False
    assert len(fresh.positions) == 3

    await database.dispose()


async def test_background_failure_is_logged(settings, cipher, caplog):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    cache = SnapshotCache(
        database,
        StubFetcher(error=FlexError("SendRequest failed: 503 Service Unavailable")),
        cipher=cipher,
        settings=settings,
    )

    with caplog.at_level(logging.WARNING, logger="flex_portfolio.services.snapshot_cache"):
        assert cache.schedule_refresh("user-1")
        assert not cache.schedule_refresh("user-1")
        await cache.aclose()

    assert not cache.is_refreshing("user-1")
    assert any("Background refresh for holder user-1 failed" in r.getMessage() for r in caplog.records)
    await database.dispose()


async def test_cash_failure_does_not_block_positions(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    async with database.engine.begin() as connection:
        await connection.execute(text("DROP TABLE cash_balances"))
    cache = SnapshotCache(database, StubFetcher(FIRST), cipher=cipher, settings=settings)

    result = await cache.refresh("user-1")
    snapshot = await cache.get("user-1")

    assert result.updated == 3
    assert result.cash_rows == 0
    assert len(snapshot.positions) == 3
    assert snapshot.cash_balances == []

    await cache.aclose()
    await database.dispose()


async def test_cash_only_snapshot_stays_fresh(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    fetcher = StubFetcher(statement_xml(cash_rows=[cash_row_xml("USD", "250")]))
    cache = SnapshotCache(database, fetcher, cipher=cipher, settings=settings)

    result = await cache.refresh("user-1")
    assert result.updated == 0
    assert result.cash_rows == 1

    for _ in range(3):
        snapshot = await cache.get("user-1")
        await cache.aclose()
        assert snapshot.positions == []
        assert snapshot.stale is False
        assert snapshot.last_updated is not None

    assert len(fetcher.calls) == 1
    await database.dispose()


async def test_open_price_stands_in_for_missing_cost_basis(settings, cipher):
    database = await _database(settings)
    await _holder_with_credentials(database, cipher)
    document = statement_xml(
        open_positions=[open_position_xml(cost_price=None, cost_money=None, open_price="10")],
    )
    cache = SnapshotCache(database, StubFetcher(document), cipher=cipher, settings=settings)

    await cache.refresh("user-1")
    snapshot = await cache.get("user-1")
    (row,) = snapshot.positions
    (view,) = assemble_cached_view(snapshot).positions

    assert row.unit_cost_basis_price == Decimal("10")
    assert row.total_cost_basis_money is None
    assert view.avg_cost == 10
    assert view.pl_abs == 200
    assert abs(view.pl_pct - 0.2) < 1e-9

    await cache.aclose()
    await database.dispose()
