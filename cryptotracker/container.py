from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from cryptotracker.config import Settings, get_settings
from cryptotracker.services.cache import Clock, utcnow
from cryptotracker.services.coingecko import CoinGeckoClient
from cryptotracker.services.diagnostics import DiagnosticsService
from cryptotracker.services.ledger import TransactionService
from cryptotracker.services.market_data import MarketDataService
from cryptotracker.services.pl_persistence import PLPersistenceService
from cryptotracker.services.portfolio import PortfolioService
from cryptotracker.services.storage import KeyValueStore
from cryptotracker.services.updates import PortfolioUpdates


@dataclass
class ServiceContainer:
    settings: Settings
    store: KeyValueStore
    diagnostics: DiagnosticsService
    client: CoinGeckoClient
    market: MarketDataService
    ledger: TransactionService
    persistence: PLPersistenceService
    portfolio: PortfolioService

    async def initialize(self) -> None:
        await self.portfolio.initialize()

    async def close(self) -> None:
        await self.ledger.flush()
        await self.client.close()


def build_services(
    store: KeyValueStore,
    settings: Optional[Settings] = None,
    client: Optional[CoinGeckoClient] = None,
    clock: Clock = utcnow,
) -> ServiceContainer:
    """Construct every service once and wire the ledger to the valuation engine."""
    settings = settings or get_settings()
    diagnostics = DiagnosticsService()
    client = client or CoinGeckoClient(
        base_url=settings.coingecko_base_url,
        api_key=settings.coingecko_api_key,
        connect_timeout=settings.connect_timeout_seconds,
        read_timeout=settings.read_timeout_seconds,
    )
    market = MarketDataService(client, store, diagnostics, settings=settings, clock=clock)
    ledger = TransactionService(store, diagnostics, user_id=settings.user_id, clock=clock)
    persistence = PLPersistenceService(store, diagnostics, clock=clock)
    portfolio = PortfolioService(
        ledger,
        persistence,
        market,
        store,
        diagnostics,
        updates=PortfolioUpdates(),
        settings=settings,
        clock=clock,
    )
    ledger.add_listener(portfolio.on_transaction_mutated)

    return ServiceContainer(
        settings=settings,
        store=store,
        diagnostics=diagnostics,
        client=client,
        market=market,
        ledger=ledger,
        persistence=persistence,
        portfolio=portfolio,
    )


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built at startup."""
    return request.app.state.services
