from decimal import Decimal

import pytest

from conftest import tx
from cryptotracker.tasks.scheduler import refresh_portfolio


@pytest.mark.asyncio
async def test_scheduled_refresh_uses_network_then_starts_cooldown(ready_services, stub_client, clock):
    await ready_services.ledger.add(tx("bitcoin", "buy", "0.5", "45000"))
    await ready_services.ledger.flush()

    await refresh_portfolio(ready_services)

    assert stub_client.count("simple_price") == 1
    assert ready_services.portfolio.get_cached_summary().total_value == Decimal("25000")
    assert not ready_services.portfolio.cooldown.is_allowed(clock())


@pytest.mark.asyncio
async def test_scheduled_refresh_swallows_failures(ready_services, monkeypatch):
    async def boom():
        raise RuntimeError("store offline")

    monkeypatch.setattr(ready_services.portfolio, "refresh", boom)

    await refresh_portfolio(ready_services)
