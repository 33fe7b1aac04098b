from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from cryptotracker.container import ServiceContainer, get_services
from cryptotracker.errors import PriceUnavailable
from cryptotracker.schemas.market import AssetListResponse, AssetQuote, HistoricalSeries, PriceResponse

router = APIRouter(prefix="/market", tags=["market"])


@router.get("/assets", response_model=AssetListResponse)
async def list_assets(
    limit: int = Query(default=100, ge=1, le=750),
    services: ServiceContainer = Depends(get_services),
):
    """Top assets by market cap, from cache when possible."""
    assets = await services.market.list_top_assets(limit)
    return AssetListResponse(assets=assets, count=len(assets))


@router.get("/search", response_model=AssetListResponse)
async def search_assets(
    q: str = Query(..., min_length=1),
    services: ServiceContainer = Depends(get_services),
):
    assets = await services.market.search(q)
    return AssetListResponse(assets=assets, count=len(assets))


@router.get("/assets/{asset_id}", response_model=AssetQuote)
async def get_asset(asset_id: str, services: ServiceContainer = Depends(get_services)):
    asset = await services.market.get_asset_details(asset_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@router.get("/price/{asset_id}", response_model=PriceResponse)
async def get_price(asset_id: str, services: ServiceContainer = Depends(get_services)):
    try:
        price = await services.market.get_current_price(asset_id)
    except PriceUnavailable as e:
        return PriceResponse(asset_id=asset_id, available=False, detail=str(e))
    return PriceResponse(asset_id=asset_id, price=price, available=True)


@router.get("/history/{asset_id}", response_model=HistoricalSeries)
async def get_history(
    asset_id: str,
    days: int = Query(default=365, ge=1, le=3650),
    services: ServiceContainer = Depends(get_services),
):
    series = await services.market.get_historical_series(asset_id, days)
    if series is None:
        raise HTTPException(status_code=503, detail="Historical data unavailable")
    return series


@router.get("/status")
async def get_status(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Call budget and cache state of the market data provider."""
    return services.market.get_api_status()
