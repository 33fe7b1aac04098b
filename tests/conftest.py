"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from cryptotracker.config import Settings
from cryptotracker.container import build_services
from cryptotracker.errors import RateLimitExceeded
from cryptotracker.services.diagnostics import DiagnosticsService
from cryptotracker.services.storage import MemoryKeyValueStore

START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStore(MemoryKeyValueStore):
    """Memory store whose writes fail for selected keys."""

    def __init__(self):
        super().__init__()
        self.fail_keys = set()

    async def set(self, key: str, value: str) -> bool:
        if key in self.fail_keys:
            return False
        return await super().set(key, value)


def market_row(asset_id: str, symbol: str, price, rank: int = 1) -> Dict:
    return {
        "id": asset_id,
        "symbol": symbol,
        "name": asset_id.title(),
        "image": f"https://example.com/{asset_id}.png",
        "current_price": price,
        "market_cap": 1000000,
        "market_cap_rank": rank,
        "price_change_percentage_24h": 1.5,
        "total_volume": 5000,
        "last_updated": "2026-01-15T11:59:00Z",
    }


class StubCoinGeckoClient:
    """Stands in for CoinGeckoClient; records calls instead of doing HTTP."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, markets: Optional[List[Dict]] = None):
        self.prices = prices or {}
        self.markets = markets if markets is not None else []
        self.chart: Dict = {"prices": []}
        self.error: Optional[Exception] = None
        self.calls: List[str] = []
        self.closed = False

    def _check(self, name: str):
        self.calls.append(name)
        if self.error is not None:
            raise self.error

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def get_markets(self, vs_currency="usd", per_page=250, page=1):
        self._check("markets")
        start = (page - 1) * per_page
        return self.markets[start:start + per_page]

    async def get_simple_price(self, ids, vs_currency="usd"):
        self._check("simple_price")
        return {i: {vs_currency: self.prices[i]} for i in ids if i in self.prices}

    async def get_coin(self, coin_id):
        self._check("coin")
        if coin_id not in self.prices:
            return {}
        return {
            "id": coin_id,
            "symbol": coin_id[:3],
            "name": coin_id.title(),
            "image": {"large": ""},
            "market_data": {"current_price": {"usd": self.prices[coin_id]}},
        }

    async def get_market_chart(self, coin_id, days, vs_currency="usd"):
        self._check(f"chart:{days}")
        return self.chart

    async def close(self):
        self.closed = True


def rate_limited() -> RateLimitExceeded:
    return RateLimitExceeded("429 Too Many Requests for /simple/price")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def diagnostics():
    return DiagnosticsService()


@pytest.fixture
def settings():
    return Settings(storage_backend="memory", user_id="test-user")


@pytest.fixture
def stub_client():
    return StubCoinGeckoClient(prices={"bitcoin": 50000, "ethereum": 3000})


@pytest.fixture
def services(store, settings, stub_client, clock):
    return build_services(store, settings=settings, client=stub_client, clock=clock)


@pytest_asyncio.fixture
async def ready_services(services):
    await services.initialize()
    yield services
    await services.close()


def tx(asset_id="bitcoin", kind="buy", amount="1", price="100", when=START, **extra) -> Dict:
    data = {
        "asset_id": asset_id,
        "symbol": extra.pop("symbol", asset_id[:3]),
        "name": extra.pop("name", asset_id.title()),
        "kind": kind,
        "amount": Decimal(amount),
        "price_per_unit": Decimal(price),
        "timestamp": when,
    }
    data.update(extra)
    return data
