"""API routers."""

from .portfolio import router as portfolio_router
from .settings import router as settings_router

__all__ = ["portfolio_router", "settings_router"]
