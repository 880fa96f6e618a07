"""Domain services for statement ingestion and portfolio views."""

from .assembler import assemble_cached_view, assemble_statement_view, derive_fx_rates, median, reconcile_cash
from .credentials import resolve_credentials, save_flex_credentials
from .normalize import NormalizedTrade, normalize_trades
from .positions import PositionCalc, rebuild_positions, sort_chronologically
from .snapshot_cache import CachedSnapshot, RefreshResult, SnapshotCache
from .sync import sync_portfolio

__all__ = [
    "CachedSnapshot",
    "NormalizedTrade",
    "PositionCalc",
    "RefreshResult",
    "SnapshotCache",
    "assemble_cached_view",
    "assemble_statement_view",
    "derive_fx_rates",
    "median",
    "normalize_trades",
    "rebuild_positions",
    "reconcile_cash",
    "resolve_credentials",
    "save_flex_credentials",
    "sort_chronologically",
    "sync_portfolio",
]
