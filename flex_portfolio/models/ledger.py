"""Canonical trade ledger and reconciled positions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base
from .holder import utcnow

TRADE_SIDES = ("BUY", "SELL")

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_account_exec_ts", "account_id", "exec_ts"),
        Index("ix_trades_account_conid", "account_id", "conid"),
    )

    # prefer the execution id, fall back to the trade id
    trade_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    ib_exec_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trade_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_id: Mapped[str] = mapped_column(String(32))
    symbol: Mapped[str] = mapped_column(String(32))
    conid: Mapped[int] = mapped_column(BigInteger)
    side: Mapped[str] = mapped_column(String(4))
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6))
    trade_price: Mapped[Decimal] = mapped_column(Numeric(20, 8))
    fees: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8))
    fx_rate_to_base: Mapped[Decimal] = mapped_column(Numeric(24, 12), default=Decimal("1"))
    exec_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    trade_date: Mapped[str | None] = mapped_column(String(16), nullable=True)
    listing_exchange: Mapped[str | None] = mapped_column(String(32), nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSONType, nullable=True)


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (UniqueConstraint("account_id", "conid", name="uq_positions_account_conid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(32))
    conid: Mapped[int] = mapped_column(BigInteger)
    symbol: Mapped[str] = mapped_column(String(32))
    currency: Mapped[str] = mapped_column(String(8))
    # signed, negative for shorts
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6))
    avg_cost_base: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    date_added: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16))
    counts: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


__all__ = ["Position", "SyncRun", "TRADE_SIDES", "Trade"]
