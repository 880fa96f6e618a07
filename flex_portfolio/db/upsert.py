"""Dialect-aware ``INSERT .. ON CONFLICT`` construction."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

# asyncpg caps a statement at 32767 bind parameters; no row here binds more than 20.
UPSERT_BATCH_SIZE = 500


def dialect_insert(session: AsyncSession, model: Any):
    """Return an insert construct that supports ``on_conflict_do_*`` for the bound dialect."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported for dialect {dialect!r}")


def batched(rows: Sequence[dict], size: int = UPSERT_BATCH_SIZE) -> Iterator[Sequence[dict]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


__all__ = ["UPSERT_BATCH_SIZE", "batched", "dialect_insert"]
