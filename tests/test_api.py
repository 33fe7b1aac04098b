from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import rate_limited
from cryptotracker.main import app

BTC_BUY = {
    "asset_id": "bitcoin",
    "symbol": "btc",
    "name": "Bitcoin",
    "kind": "buy",
    "amount": "0.5",
    "price_per_unit": "45000",
    "timestamp": "2026-01-10T09:00:00Z",
}


@pytest_asyncio.fixture
async def client(ready_services):
    app.state.services = ready_services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["engine_state"] == "ready"


@pytest.mark.asyncio
async def test_create_and_list_transactions(client, ready_services):
    response = await client.post("/transactions", json=BTC_BUY)
    assert response.status_code == 201
    created = response.json()
    assert created["id"] == "local_1"
    assert created["symbol"] == "BTC"

    await ready_services.ledger.flush()
    listing = (await client.get("/transactions")).json()
    assert listing["count"] == 1

    summary = (await client.get("/portfolio/summary")).json()
    assert Decimal(summary["total_invested"]) == Decimal("22500")

    by_range = await client.get(
        "/transactions", params={"start": "2026-01-01T00:00:00Z", "end": "2026-01-05T00:00:00Z"}
    )
    assert by_range.json()["count"] == 0


@pytest.mark.asyncio
async def test_invalid_transaction_is_422(client):
    response = await client.post("/transactions", json={**BTC_BUY, "amount": "-1"})
    assert response.status_code == 422

    response = await client.post("/transactions", json={**BTC_BUY, "kind": "hold"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_update_and_delete_unknown_transaction(client):
    response = await client.put("/transactions/local_42", json=BTC_BUY)
    assert response.status_code == 404

    response = await client.put("/transactions/local_42", params={"upsert": "true"}, json=BTC_BUY)
    assert response.status_code == 200

    assert (await client.delete("/transactions/local_42")).status_code == 200
    assert (await client.delete("/transactions/local_42")).status_code == 404


@pytest.mark.asyncio
async def test_statistics(client, ready_services):
    await client.post("/transactions", json=BTC_BUY)
    await client.post("/transactions", json={**BTC_BUY, "kind": "sell", "amount": "0.1", "price_per_unit": "50000"})
    await ready_services.ledger.flush()

    stats = (await client.get("/transactions/statistics")).json()
    assert stats["buy_count"] == 1
    assert stats["sell_count"] == 1
    assert Decimal(stats["net_investment"]) == Decimal("17500")


@pytest.mark.asyncio
async def test_portfolio_refresh_and_holdings(client, ready_services):
    await client.post("/transactions", json=BTC_BUY)
    await ready_services.ledger.flush()

    refreshed = (await client.post("/portfolio/refresh")).json()
    assert refreshed["network_allowed"] is True
    assert Decimal(refreshed["summary"]["total_value"]) == Decimal("25000")

    again = (await client.post("/portfolio/refresh")).json()
    assert again["status"] == "cooldown"

    holdings = (await client.get("/portfolio/holdings")).json()
    assert holdings["count"] == 1
    assert Decimal(holdings["holdings"][0]["profit_loss"]) == Decimal("2500")

    assert (await client.get("/portfolio/holdings/ethereum")).status_code == 404
    assert (await client.delete("/portfolio/holdings/bitcoin")).status_code == 200
    assert (await client.get("/portfolio/holdings")).json()["count"] == 0


@pytest.mark.asyncio
async def test_portfolio_history_and_inactivity(client, ready_services):
    await client.post("/transactions", json=BTC_BUY)
    await ready_services.ledger.flush()

    history = (await client.get("/portfolio/history", params={"days": 30})).json()
    assert history["count"] == 1

    inactivity = (await client.get("/portfolio/inactivity")).json()
    assert inactivity["has_data"] is True


@pytest.mark.asyncio
async def test_market_price_when_rate_limited(client, stub_client):
    stub_client.error = rate_limited()
    response = await client.get("/market/price/bitcoin")
    assert response.status_code == 200
    assert response.json()["available"] is False

    assets = (await client.get("/market/assets", params={"limit": 3})).json()
    assert assets["count"] == 3
    assert assets["assets"][0]["is_fallback"] is True

    status = (await client.get("/market/status")).json()
    assert status["rate_limiting"]["is_rate_limited"] is True
