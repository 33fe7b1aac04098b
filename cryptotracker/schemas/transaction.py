from pydantic import BaseModel, field_validator
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class TransactionKind(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TransactionBase(BaseModel):
    asset_id: str
    symbol: str
    name: str
    icon_url: str = ""
    kind: str  # 'buy' or 'sell', checked by the ledger
    amount: Decimal
    price_per_unit: Decimal
    timestamp: datetime
    exchange: str = "Unknown"
    notes: str = ""

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class TransactionCreate(TransactionBase):
    pass


class Transaction(TransactionBase):
    id: str
    user_id: str
    kind: TransactionKind
    created_at: datetime
    updated_at: datetime

    @property
    def total_value(self) -> Decimal:
        return self.amount * self.price_per_unit

    class Config:
        from_attributes = True


class TransactionStatistics(BaseModel):
    count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    total_invested: Decimal = Decimal("0")
    total_received: Decimal = Decimal("0")
    net_investment: Decimal = Decimal("0")


class TransactionListResponse(BaseModel):
    transactions: List[Transaction]
    count: int


class TransactionDeleteResponse(BaseModel):
    id: str
    removed: bool
    detail: Optional[str] = None
