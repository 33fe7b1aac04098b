from cryptotracker.routers.portfolio import router as portfolio_router
from cryptotracker.routers.transactions import router as transactions_router
from cryptotracker.routers.market import router as market_router

__all__ = ["portfolio_router", "transactions_router", "market_router"]
