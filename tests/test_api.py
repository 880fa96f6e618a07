from contextlib import asynccontextmanager

from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from flex_portfolio.db import Database
from flex_portfolio.errors import FlexError
from flex_portfolio.main import create_app
from flex_portfolio.models import AccountHolder, SyncRun

from flex_samples import StubFetcher, cash_row_xml, open_position_xml, statement_xml, trade_xml

HEADERS = {"X-User-Id": "user-1"}
CREDENTIALS = {"flex_token": "token-12345", "query_id": "987654", "base_ccy": "usd"}

BUY = statement_xml(
    [trade_xml(exec_id="E1", side="BUY", quantity="100", price="10", commission="-1")],
    open_positions=[open_position_xml(mark="12", value="1200")],
    cash_rows=[cash_row_xml("USD", "500"), cash_row_xml("BASE_SUMMARY", "500", level="BaseCurrency")],
)
SELL = statement_xml(
    [
        trade_xml(exec_id="E1", side="BUY", quantity="100", price="10", commission="-1"),
        trade_xml(
            exec_id="E2",
            trade_id="T2",
            side="SELL",
            quantity="-150",
            price="12",
            commission="0",
            date_time="20240103;100000",
        ),
    ],
    open_positions=[open_position_xml(position="-50", mark="12", value="-600", side="Short")],
)


def _client(app):
    @asynccontextmanager
    async def _manager():
        async with app.router.lifespan_context(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                yield client

    return _manager


async def test_health(settings, cipher):
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=settings)

    async with _client(app)() as api:
        response = await api.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_requests_need_user_and_internal_token(settings, cipher):
    guarded = settings.model_copy(update={"internal_auth_token": "s3cret"})
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=guarded)

    async with _client(app)() as api:
        no_user = await api.get("/portfolio/positions", headers={"X-Internal-Token": "s3cret"})
        bad_token = await api.get("/portfolio/positions", headers={**HEADERS, "X-Internal-Token": "nope"})

    assert no_user.status_code == 401
    assert bad_token.status_code == 401


async def test_settings_then_live_statement_sync(settings, cipher):
    fetcher = StubFetcher(BUY, SELL)
    database = Database(settings.database_url)
    app = create_app(database, fetcher=fetcher, cipher=cipher, settings=settings)

    async with _client(app)() as api:
        saved = await api.put("/portfolio/settings/flex", json=CREDENTIALS, headers=HEADERS)
        assert saved.status_code == 200
        assert saved.json() == {"ok": True, "holder_id": "user-1", "base_ccy": "USD"}

        first = await api.get("/portfolio/statement", headers=HEADERS)
        assert first.status_code == 200
        payload = first.json()
        (position,) = payload["positions"]
        assert position["qty"] == 100
        assert abs(position["avg_cost"] - 10.01) < 1e-9
        assert position["side"] == "long"
        assert abs(position["pl_abs"] - 199.0) < 1e-9
        assert payload["counts"]["inserted_trades"] == 1
        assert payload["cash_base_total"] == 500
        assert payload["diagnostics"]["stages"]["equities_trades"] == 1
        assert payload["warnings"] == []

        second = await api.get("/portfolio/statement", headers=HEADERS)
        assert second.status_code == 200
        payload = second.json()
        (position,) = payload["positions"]
        assert position["qty"] == -50
        assert position["avg_cost"] == 12
        assert position["side"] == "short"
        assert payload["counts"]["inserted_trades"] == 1
        assert payload["counts"]["ledger_trades"] == 2

        async with database.session() as session:
            holder = await session.get(AccountHolder, "user-1")
            runs = (await session.execute(select(SyncRun).order_by(SyncRun.id))).scalars().all()

    assert holder.flex_token_enc != "token-12345"
    assert cipher.decrypt(holder.flex_token_enc) == "token-12345"
    assert fetcher.calls == [("token-12345", "987654"), ("token-12345", "987654")]
    assert [run.status for run in runs] == ["ok", "ok"]
    assert runs[-1].counts["positions"] == 1


async def test_statement_without_credentials_asks_for_configuration(settings, cipher):
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=settings)

    async with _client(app)() as api:
        response = await api.get("/portfolio/statement", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["needs_action"] == "CONFIGURE_FLEX_CREDENTIALS"


async def test_statement_uses_configured_default_credentials(settings, cipher):
    configured = settings.model_copy(update={"ibkr_flex_token": "env-token-1", "ibkr_query_id": "111"})
    fetcher = StubFetcher(BUY)
    app = create_app(Database(settings.database_url), fetcher=fetcher, cipher=cipher, settings=configured)

    async with _client(app)() as api:
        response = await api.get("/portfolio/statement", headers=HEADERS)

    assert response.status_code == 200
    assert fetcher.calls == [("env-token-1", "111")]


async def test_expired_token_maps_to_renew_action(settings, cipher):
    fetcher = StubFetcher(error=FlexError("Flex token expired", "TOKEN_EXPIRED"))
    database = Database(settings.database_url)
    app = create_app(database, fetcher=fetcher, cipher=cipher, settings=settings)

    async with _client(app)() as api:
        await api.put("/portfolio/settings/flex", json=CREDENTIALS, headers=HEADERS)
        response = await api.get("/portfolio/statement", headers=HEADERS)

        async with database.session() as session:
            run = (await session.execute(select(SyncRun))).scalars().one()

    assert response.status_code == 400
    assert response.json() == {
        "error": "Flex token expired",
        "code": "TOKEN_EXPIRED",
        "needs_action": "RENEW_FLEX_TOKEN",
    }
    assert run.status == "failed"
    assert run.error == "Flex token expired"


async def test_malformed_statement_is_a_client_error(settings, cipher):
    app = create_app(
        Database(settings.database_url), fetcher=StubFetcher("<FlexQueryResponse>"), cipher=cipher, settings=settings
    )

    async with _client(app)() as api:
        await api.put("/portfolio/settings/flex", json=CREDENTIALS, headers=HEADERS)
        response = await api.get("/portfolio/statement", headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["code"] == "PARSE_ERROR"


async def test_cached_positions_refresh_in_background(settings, cipher):
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=settings)

    async with _client(app)() as api:
        await api.put("/portfolio/settings/flex", json=CREDENTIALS, headers=HEADERS)

        cold = await api.get("/portfolio/positions", headers=HEADERS)
        assert cold.status_code == 200
        assert cold.json()["stale"] is True
        assert cold.json()["positions"] == []

        await app.state.snapshot_cache.aclose()

        warm = await api.get("/portfolio/positions", headers=HEADERS)
        payload = warm.json()

    assert payload["stale"] is False
    (position,) = payload["positions"]
    assert position["symbol"] == "AAPL"
    assert position["mv"] == 1200
    assert position["weight_pct"] == 1.0
    assert payload["cash_base_total"] == 500
    assert payload["cash_approximate"] is False


async def test_refresh_endpoint(settings, cipher):
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=settings)

    async with _client(app)() as api:
        unknown = await api.post("/portfolio/positions/refresh", headers=HEADERS)

        await api.put("/portfolio/settings/flex", json=CREDENTIALS, headers=HEADERS)
        queued = await api.post("/portfolio/positions/refresh", headers=HEADERS)

    assert unknown.status_code == 404
    assert unknown.json()["code"] == "HOLDER_NOT_FOUND"
    assert queued.status_code == 202
    assert queued.json() == {"queued": True, "holder_id": "user-1"}


async def test_settings_validation(settings, cipher):
    app = create_app(Database(settings.database_url), fetcher=StubFetcher(BUY), cipher=cipher, settings=settings)

    async with _client(app)() as api:
        response = await api.put(
            "/portfolio/settings/flex",
            json={"flex_token": "short", "query_id": "1"},
            headers=HEADERS,
        )

    assert response.status_code == 422
