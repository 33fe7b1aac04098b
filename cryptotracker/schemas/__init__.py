from cryptotracker.schemas.transaction import (
    TransactionKind,
    TransactionCreate,
    Transaction,
    TransactionStatistics,
    TransactionListResponse,
    TransactionDeleteResponse,
)
from cryptotracker.schemas.portfolio import (
    Holding,
    PortfolioSummary,
    PortfolioHoldingsResponse,
    RefreshResponse,
    PortfolioExport,
)
from cryptotracker.schemas.snapshot import (
    PLSnapshot,
    TimeSeriesPoint,
    ConsistencyReport,
    InactivityStatus,
    ClearResult,
    TimeSeriesResponse,
)
from cryptotracker.schemas.market import (
    AssetQuote,
    PricePoint,
    HistoricalSeries,
    AssetListResponse,
    PriceResponse,
)

__all__ = [
    "TransactionKind",
    "TransactionCreate",
    "Transaction",
    "TransactionStatistics",
    "TransactionListResponse",
    "TransactionDeleteResponse",
    "Holding",
    "PortfolioSummary",
    "PortfolioHoldingsResponse",
    "RefreshResponse",
    "PortfolioExport",
    "PLSnapshot",
    "TimeSeriesPoint",
    "ConsistencyReport",
    "InactivityStatus",
    "ClearResult",
    "TimeSeriesResponse",
    "AssetQuote",
    "PricePoint",
    "HistoricalSeries",
    "AssetListResponse",
    "PriceResponse",
]
