from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from cryptotracker.container import ServiceContainer, get_services
from cryptotracker.schemas.portfolio import (
    Holding,
    PortfolioExport,
    PortfolioHoldingsResponse,
    PortfolioSummary,
    RefreshResponse,
)
from cryptotracker.schemas.snapshot import ClearResult, InactivityStatus, TimeSeriesResponse

router = APIRouter(prefix="/portfolio", tags=["portfolio"])


@router.get("/summary", response_model=PortfolioSummary)
async def get_summary(services: ServiceContainer = Depends(get_services)):
    """Last computed (or restored) portfolio summary."""
    return services.portfolio.get_cached_summary() or PortfolioSummary()


@router.get("/holdings", response_model=PortfolioHoldingsResponse)
async def list_holdings(services: ServiceContainer = Depends(get_services)):
    holdings = await services.portfolio.get_holdings_with_current_prices()
    return PortfolioHoldingsResponse(
        holdings=holdings,
        count=len(holdings),
    )


@router.get("/holdings/{asset_id}", response_model=Holding)
async def get_holding(asset_id: str, services: ServiceContainer = Depends(get_services)):
    holding = await services.portfolio.get_holding(asset_id)
    if holding is None:
        raise HTTPException(status_code=404, detail="Holding not found")
    return holding


@router.delete("/holdings/{asset_id}")
async def delete_holding(asset_id: str, services: ServiceContainer = Depends(get_services)):
    """Remove every transaction for an asset and recalculate."""
    if not await services.portfolio.delete_asset(asset_id):
        raise HTTPException(status_code=404, detail="No transactions for asset")
    return {"asset_id": asset_id, "removed": True}


@router.post("/recalculate", response_model=PortfolioSummary)
async def recalculate(services: ServiceContainer = Depends(get_services)):
    """Recompute from cached or average prices without spending API budget."""
    return await services.portfolio.recalculate(source="api_recalculate")


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(services: ServiceContainer = Depends(get_services)):
    return await services.portfolio.refresh()


@router.post("/refresh/manual", response_model=RefreshResponse)
async def manual_refresh(services: ServiceContainer = Depends(get_services)):
    """Refresh now, ignoring the cooldown (an early refresh lengthens the next one)."""
    return await services.portfolio.force_manual_refresh()


@router.post("/cache/clear")
async def clear_cache(services: ServiceContainer = Depends(get_services)):
    await services.portfolio.clear_cache()
    services.market.clear_cache()
    return {"status": "success"}


@router.get("/history", response_model=TimeSeriesResponse)
async def get_history(
    days: Optional[int] = Query(default=None, ge=1, le=3650),
    services: ServiceContainer = Depends(get_services),
):
    """P&L time series, optionally limited to the trailing ``days``."""
    period = timedelta(days=days) if days else None
    points = await services.portfolio.get_time_series(period)
    return TimeSeriesResponse(points=points, count=len(points))


@router.get("/inactivity", response_model=InactivityStatus)
async def get_inactivity(services: ServiceContainer = Depends(get_services)):
    return await services.persistence.check_inactivity()


@router.get("/export", response_model=PortfolioExport)
async def export_portfolio(services: ServiceContainer = Depends(get_services)):
    return await services.portfolio.export_portfolio()


@router.get("/diagnostics")
async def get_diagnostics(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    diagnostics = await services.portfolio.get_diagnostics()
    diagnostics["recommend_refresh"] = services.portfolio.should_recommend_refresh()
    diagnostics["recent_log"] = services.diagnostics.recent(limit=50)
    diagnostics["calculation_log"] = (await services.persistence.get_calculation_log())[-20:]
    return diagnostics


@router.post("/reset", response_model=ClearResult)
async def reset_pl_data(
    create_backup: bool = Query(default=True),
    services: ServiceContainer = Depends(get_services),
):
    """Wipe persisted P&L data (snapshot, time series, logs)."""
    result = await services.persistence.clear_all(create_backup=create_backup)
    await services.portfolio.clear_cache()
    return result
