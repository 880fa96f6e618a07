"""Account holders and their encrypted Flex credentials."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from backends without time zone support."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class AccountHolder(Base):
    __tablename__ = "account_holder"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    base_ccy: Mapped[str | None] = mapped_column(String(8), nullable=True)
    flex_token_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    flex_query_id_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def has_flex_credentials(self) -> bool:
        return bool(self.flex_token_enc and self.flex_query_id_enc)


__all__ = ["AccountHolder", "as_utc", "utcnow"]
