from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


class AssetQuote(BaseModel):
    id: str
    symbol: str
    name: str
    image: str = ""
    current_price: Decimal
    market_cap: Decimal = Decimal("0")
    market_cap_rank: Optional[int] = None
    price_change_percentage_24h: Decimal = Decimal("0")
    total_volume: Decimal = Decimal("0")
    last_updated: Optional[datetime] = None
    is_fallback: bool = False


class PricePoint(BaseModel):
    timestamp: datetime
    price: Decimal


class HistoricalSeries(BaseModel):
    asset_id: str
    days: int
    prices: List[PricePoint]
    fetched_at: datetime


class AssetListResponse(BaseModel):
    assets: List[AssetQuote]
    count: int


class PriceResponse(BaseModel):
    asset_id: str
    price: Optional[Decimal] = None
    available: bool
    detail: Optional[str] = None
