from cryptotracker.services.storage import KeyValueStore, MemoryKeyValueStore, SQLKeyValueStore
from cryptotracker.services.diagnostics import DiagnosticsService, LogCategory, LogLevel
from cryptotracker.services.coingecko import CoinGeckoClient
from cryptotracker.services.market_data import MarketDataService
from cryptotracker.services.ledger import TransactionService
from cryptotracker.services.pl_persistence import PLPersistenceService
from cryptotracker.services.portfolio import PortfolioService
from cryptotracker.services.updates import PortfolioUpdates

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SQLKeyValueStore",
    "DiagnosticsService",
    "LogCategory",
    "LogLevel",
    "CoinGeckoClient",
    "MarketDataService",
    "TransactionService",
    "PLPersistenceService",
    "PortfolioService",
    "PortfolioUpdates",
]
