from pydantic import BaseModel, computed_field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


class Holding(BaseModel):
    asset_id: str
    symbol: str
    name: str
    icon_url: str = ""
    net_amount: Decimal
    total_invested: Decimal
    average_price: Decimal
    current_price: Decimal
    price_source: str  # cache, live, details, average or default
    transaction_count: int = 0
    exchange: str = "Unknown"
    calculated_at: Optional[datetime] = None

    @computed_field
    @property
    def current_value(self) -> Decimal:
        return self.net_amount * self.current_price

    @computed_field
    @property
    def profit_loss(self) -> Decimal:
        return self.current_value - abs(self.total_invested)


class PortfolioSummary(BaseModel):
    total_value: Decimal = Decimal("0")
    total_invested: Decimal = Decimal("0")
    profit_loss: Decimal = Decimal("0")
    percentage_change: Decimal = Decimal("0")
    holdings_count: int = 0
    transaction_count: int = 0
    last_updated: Optional[datetime] = None
    calculated_at: Optional[datetime] = None
    calculation_method: str = "empty"


class PortfolioHoldingsResponse(BaseModel):
    holdings: List[Holding]
    count: int


class RefreshResponse(BaseModel):
    status: str
    network_allowed: bool
    next_refresh_at: Optional[datetime] = None
    summary: PortfolioSummary


class PortfolioExport(BaseModel):
    exported_at: datetime
    user_id: str
    summary: PortfolioSummary
    holdings: List[Holding]
    total_holdings: int
    diagnostics: Dict[str, Any] = {}
