from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from cryptotracker.container import ServiceContainer, get_services
from cryptotracker.errors import NotFoundError, StorageFailure, ValidationError
from cryptotracker.schemas.transaction import (
    Transaction,
    TransactionCreate,
    TransactionDeleteResponse,
    TransactionListResponse,
    TransactionStatistics,
)

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    asset_id: Optional[str] = Query(default=None, description="Only this asset"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    services: ServiceContainer = Depends(get_services),
):
    """List transactions, newest first."""
    ledger = services.ledger
    if start is not None or end is not None:
        if start is None or end is None:
            raise HTTPException(status_code=422, detail="start and end must be given together")
        transactions = await ledger.list_by_date_range(start, end)
        if asset_id:
            transactions = [t for t in transactions if t.asset_id == asset_id]
    elif asset_id:
        transactions = await ledger.list_by_asset(asset_id)
    else:
        transactions = await ledger.list_all()
    return TransactionListResponse(transactions=transactions, count=len(transactions))


@router.get("/recent", response_model=TransactionListResponse)
async def list_recent(
    limit: int = Query(default=10, ge=1, le=100),
    services: ServiceContainer = Depends(get_services),
):
    transactions = await services.ledger.list_recent(limit)
    return TransactionListResponse(transactions=transactions, count=len(transactions))


@router.get("/statistics", response_model=TransactionStatistics)
async def get_statistics(services: ServiceContainer = Depends(get_services)):
    return await services.ledger.summary_statistics()


@router.get("/{transaction_id}", response_model=Transaction)
async def get_transaction(transaction_id: str, services: ServiceContainer = Depends(get_services)):
    transaction = await services.ledger.get(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@router.post("", response_model=Transaction, status_code=201)
async def create_transaction(data: TransactionCreate, services: ServiceContainer = Depends(get_services)):
    """Record a buy or sell. The portfolio recalculates in the background."""
    try:
        return await services.ledger.add(data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.put("/{transaction_id}", response_model=Transaction)
async def update_transaction(
    transaction_id: str,
    data: TransactionCreate,
    upsert: bool = Query(default=False, description="Append when the id is unknown"),
    services: ServiceContainer = Depends(get_services),
):
    try:
        return await services.ledger.update(transaction_id, data, upsert=upsert)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/{transaction_id}", response_model=TransactionDeleteResponse)
async def delete_transaction(transaction_id: str, services: ServiceContainer = Depends(get_services)):
    try:
        removed = await services.ledger.remove(transaction_id)
    except StorageFailure as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return TransactionDeleteResponse(id=transaction_id, removed=True)
