from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


class PLSnapshot(BaseModel):
    total_value: Decimal
    total_invested: Decimal
    profit_loss: Decimal
    percentage_change: Decimal
    transaction_count: int = 0
    timestamp: datetime
    calculation_version: str
    source: str = "unknown"
    extra: Dict[str, Any] = {}
    integrity_hash: str
    write_id: str
    last_auto_correction: Optional[datetime] = None


class TimeSeriesPoint(BaseModel):
    timestamp: datetime
    total_value: Decimal
    total_invested: Decimal
    profit_loss: Decimal
    percentage_change: Decimal
    write_id: str
    source: str = "unknown"


class ConsistencyReport(BaseModel):
    is_valid: bool
    expected_pl: Decimal
    actual_pl: Decimal
    difference: Decimal
    tolerance: Decimal
    checked_at: datetime


class InactivityStatus(BaseModel):
    has_data: bool
    is_first_use: bool
    inactive_hours: int = 0
    is_long_inactive: bool = False
    last_updated: Optional[datetime] = None
    portfolio_value: Optional[Decimal] = None
    profit_loss: Optional[Decimal] = None
    message: str


class ClearResult(BaseModel):
    success: bool
    backup_created: bool = False
    keys_cleared: int = 0
    cleared_at: datetime
    error: Optional[str] = None


class TimeSeriesResponse(BaseModel):
    points: List[TimeSeriesPoint]
    count: int
