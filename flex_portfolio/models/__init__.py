"""Model exports for the flex portfolio service."""

from .holder import AccountHolder, as_utc, utcnow
from .ledger import Position, SyncRun, Trade, TRADE_SIDES
from .snapshot import CashBalance, OpenPositionSnapshot

__all__ = [
    "AccountHolder",
    "CashBalance",
    "OpenPositionSnapshot",
    "Position",
    "SyncRun",
    "Trade",
    "TRADE_SIDES",
    "as_utc",
    "utcnow",
]
