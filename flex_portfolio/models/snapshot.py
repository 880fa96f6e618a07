"""Cached open-position and cash-balance snapshots per account holder."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base
from .holder import utcnow


class OpenPositionSnapshot(Base):
    __tablename__ = "open_positions"
    __table_args__ = (
        UniqueConstraint("holder_id", "conid", name="uq_open_positions_holder_conid"),
        Index("ix_open_positions_holder_updated", "holder_id", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_id: Mapped[str] = mapped_column(ForeignKey("account_holder.id", ondelete="CASCADE"))
    account_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    conid: Mapped[int] = mapped_column(BigInteger)
    symbol: Mapped[str] = mapped_column(String(32))
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    currency: Mapped[str] = mapped_column(String(8))
    qty: Mapped[Decimal] = mapped_column(Numeric(20, 6))
    long_short: Mapped[str] = mapped_column(String(8))
    # statement pricing/cost fields, in position currency
    unit_mark_price: Mapped[Decimal | None] = mapped_column(Numeric(20, 8), nullable=True)
    unit_cost_basis_price: Mapped[Decimal | None] = mapped_column(Numeric(20, 8), nullable=True)
    total_cost_basis_money: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    position_value: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    pos_ccy: Mapped[str | None] = mapped_column(String(8), nullable=True)
    fx_to_base: Mapped[Decimal | None] = mapped_column(Numeric(24, 12), nullable=True)
    report_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    date_open: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date_added: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_price_asof: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CashBalance(Base):
    __tablename__ = "cash_balances"
    __table_args__ = (
        UniqueConstraint("holder_id", "currency", "level_of_detail", name="uq_cash_balances_holder_ccy_lod"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_id: Mapped[str] = mapped_column(ForeignKey("account_holder.id", ondelete="CASCADE"))
    account_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    currency: Mapped[str] = mapped_column(String(16))
    # "" when the statement row has no level of detail, so the unique key still applies
    level_of_detail: Mapped[str] = mapped_column(String(32), default="")
    ending_cash: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    ending_settled_cash: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


__all__ = ["CashBalance", "OpenPositionSnapshot"]
