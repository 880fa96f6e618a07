import asyncio
import inspect
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flex_portfolio.core.config import FlexPortfolioSettings  # noqa: E402
from flex_portfolio.core.crypto import CredentialCipher, generate_key  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used in the suite."""

    config.addinivalue_line("markers", "asyncio: mark test as running in an asyncio event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async test functions without requiring pytest-asyncio."""

    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            funcargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
            loop.run_until_complete(test_function(**funcargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> FlexPortfolioSettings:
    return FlexPortfolioSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flex.db'}",
        base_currency="USD",
        encryption_key=generate_key(),
        ibkr_flex_token=None,
        ibkr_query_id=None,
        internal_auth_token=None,
        flex_poll_backoff_seconds=0.0,
        telemetry_enabled=False,
    )


@pytest.fixture
def cipher(settings: FlexPortfolioSettings) -> CredentialCipher:
    return CredentialCipher(settings.encryption_key)
