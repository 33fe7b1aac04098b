import logging
import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cryptotracker.config import Settings, get_settings
from cryptotracker.errors import NetworkFailure, PriceUnavailable, RateLimitExceeded
from cryptotracker.schemas.market import AssetQuote, HistoricalSeries, PricePoint
from cryptotracker.services.cache import Clock, TimedCache, TimedMapCache, utcnow
from cryptotracker.services.coingecko import MAX_PER_PAGE, CoinGeckoClient
from cryptotracker.services.diagnostics import DiagnosticsService, LogCategory
from cryptotracker.services.fallback_assets import fallback_assets, find_fallback_asset
from cryptotracker.services.ratelimit import CallBudget, RateLimitPolicy
from cryptotracker.services.storage import KeyValueStore

logger = logging.getLogger(__name__)

ASSETS_CACHE_KEY = "crypto_full_dataset_v4"
HISTORICAL_CACHE_KEY = "crypto_historical_cache_v4"
CALL_LOG_KEY = "crypto_api_call_log_v4"

MAX_PAGES = 3


def _positive_decimal(value: Any) -> Optional[Decimal]:
    """Decimal for a finite, strictly positive number; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def _decimal_or_zero(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


def _quote_from_market(item: Dict) -> Optional[AssetQuote]:
    """Map a /coins/markets row; rows without a usable price are skipped."""
    price = _positive_decimal(item.get("current_price"))
    if price is None or not item.get("id"):
        return None
    return AssetQuote(
        id=item["id"],
        symbol=item.get("symbol") or "",
        name=item.get("name") or "",
        image=item.get("image") or "",
        current_price=price,
        market_cap=_decimal_or_zero(item.get("market_cap")),
        market_cap_rank=item.get("market_cap_rank"),
        price_change_percentage_24h=_decimal_or_zero(item.get("price_change_percentage_24h")),
        total_volume=_decimal_or_zero(item.get("total_volume")),
        last_updated=item.get("last_updated"),
    )


def _quote_from_coin(data: Dict, vs_currency: str) -> Optional[AssetQuote]:
    """Map a /coins/{id} document."""
    market = data.get("market_data") or {}
    price = _positive_decimal((market.get("current_price") or {}).get(vs_currency))
    if price is None or not data.get("id"):
        return None
    image = data.get("image") or {}
    return AssetQuote(
        id=data["id"],
        symbol=data.get("symbol") or "",
        name=data.get("name") or "",
        image=image.get("large") or image.get("small") or "",
        current_price=price,
        market_cap=_decimal_or_zero((market.get("market_cap") or {}).get(vs_currency)),
        market_cap_rank=data.get("market_cap_rank"),
        price_change_percentage_24h=_decimal_or_zero(market.get("price_change_percentage_24h")),
        total_volume=_decimal_or_zero((market.get("total_volume") or {}).get(vs_currency)),
        last_updated=market.get("last_updated"),
    )


def _matches(asset: AssetQuote, query: str) -> bool:
    return query in asset.name.lower() or query in asset.symbol.lower()


class MarketDataService:
    """Cache-first market data with a rolling call budget.

    Every network operation spends one unit of the budget (a paginated asset
    listing counts once). When the budget is spent, or upstream answered
    429, calls are served from cache, then from the static catalog, or fail
    fast with ``RateLimitExceeded``.
    """

    def __init__(
        self,
        client: CoinGeckoClient,
        store: KeyValueStore,
        diagnostics: DiagnosticsService,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.client = client
        self.store = store
        self.diagnostics = diagnostics
        self.settings = settings or get_settings()
        self._clock = clock

        self.policy = RateLimitPolicy(
            window=timedelta(hours=self.settings.rate_limit_window_hours),
            min_interval=timedelta(minutes=self.settings.min_call_interval_minutes),
            max_calls=self.settings.max_calls_per_window,
        )
        self.asset_ttl = timedelta(hours=self.settings.asset_cache_hours)
        self.rate_limited_ttl = timedelta(hours=self.settings.rate_limited_cache_hours)

        self._budget = CallBudget()
        self._assets: TimedCache[List[AssetQuote]] = TimedCache(self.asset_ttl, clock)
        self._prices: TimedMapCache[str, Decimal] = TimedMapCache(self.asset_ttl, clock)
        self._historical: TimedMapCache[str, HistoricalSeries] = TimedMapCache(
            timedelta(hours=self.settings.historical_cache_hours), clock
        )
        self._initialized = False

    async def initialize(self) -> None:
        """Restore call history and caches persisted by a previous run."""
        if self._initialized:
            return
        self._initialized = True

        self._budget = CallBudget.from_dict(await self.store.get_json(CALL_LOG_KEY))

        cached = await self.store.get_json(ASSETS_CACHE_KEY)
        if isinstance(cached, dict):
            try:
                cached_at = datetime.fromisoformat(cached["cached_at"])
                assets = [AssetQuote.model_validate(a) for a in cached.get("data", [])]
                if assets:
                    self._remember_assets(assets, cached_at)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable asset cache: {e}")

        historical = await self.store.get_json(HISTORICAL_CACHE_KEY, {})
        if isinstance(historical, dict):
            for key, entry in historical.items():
                try:
                    self._historical.set(
                        key,
                        HistoricalSeries.model_validate(entry["series"]),
                        datetime.fromisoformat(entry["cached_at"]),
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring unreadable historical cache entry {key}: {e}")

        now = self._clock()
        logger.info(
            f"Market data restored: {len(self._assets.get_stale() or [])} assets, "
            f"{len(self._historical)} series, "
            f"{self._budget.calls_in_window(now, self.policy)}/{self.policy.max_calls} calls in window"
        )

    def is_rate_limited(self) -> bool:
        return self._budget.is_exhausted(self._clock(), self.policy)

    def _effective_asset_ttl(self) -> timedelta:
        return self.rate_limited_ttl if self.is_rate_limited() else self.asset_ttl

    async def _persist_budget(self) -> None:
        if not await self.store.set_json(CALL_LOG_KEY, self._budget.to_dict()):
            logger.warning("Failed to persist API call log")

    async def _call(
        self, operation: str, fetch: Callable[[], Awaitable[Any]], respect_min_interval: bool = True
    ) -> Any:
        now = self._clock()
        reason = self._budget.denial_reason(now, self.policy, respect_min_interval)
        if reason is not None:
            self.diagnostics.warning(
                LogCategory.API_CALL,
                "API call refused by rate limiter",
                {"operation": operation, "reason": reason,
                 "calls_in_window": self._budget.calls_in_window(now, self.policy)},
            )
            raise RateLimitExceeded(f"{operation}: {reason}")

        self._budget = self._budget.record_call(now, self.policy)
        await self._persist_budget()

        try:
            return await fetch()
        except RateLimitExceeded:
            self._budget = self._budget.exhaust(self._clock(), self.policy)
            await self._persist_budget()
            self.diagnostics.error(
                LogCategory.API_CALL,
                "429 Too Many Requests - switching to cache-only mode",
                {"operation": operation},
            )
            raise
        except NetworkFailure as e:
            self.diagnostics.error(
                LogCategory.API_CALL, "API call failed", {"operation": operation, "error": str(e)}
            )
            raise

    def _remember_assets(self, assets: List[AssetQuote], stored_at: Optional[datetime] = None) -> None:
        self._assets.set(assets, stored_at)
        for asset in assets:
            self._prices.set(asset.id, asset.current_price, stored_at)

    def _cached_assets(self) -> Optional[List[AssetQuote]]:
        return self._assets.get(max_age=self._effective_asset_ttl())

    def cached_price(self, asset_id: str) -> Optional[Decimal]:
        """Price from cache only; never spends budget."""
        return self._prices.get(asset_id, max_age=self._effective_asset_ttl())

    async def _persist_assets(self) -> None:
        entry = self._assets.entry
        if entry is None:
            return
        ok = await self.store.set_json(
            ASSETS_CACHE_KEY,
            {
                "cached_at": entry.stored_at.isoformat(),
                "data": [a.model_dump(mode="json") for a in entry.value],
            },
        )
        if not ok:
            logger.warning("Failed to persist asset cache")

    async def _persist_historical(self) -> None:
        payload = {
            key: {"cached_at": entry.stored_at.isoformat(), "series": entry.value.model_dump(mode="json")}
            for key, entry in self._historical.items()
        }
        if not await self.store.set_json(HISTORICAL_CACHE_KEY, payload):
            logger.warning("Failed to persist historical cache")

    def clear_cache(self) -> None:
        self._assets.invalidate()
        self._prices.invalidate()
        self._historical.invalidate()
        logger.info("Price and historical caches cleared")

    async def _fetch_markets(self, limit: int) -> List[AssetQuote]:
        per_page = min(max(limit, 1), MAX_PER_PAGE)
        seen: Dict[str, AssetQuote] = {}
        page = 1
        while len(seen) < limit and page <= MAX_PAGES:
            rows = await self.client.get_markets(self.settings.vs_currency, per_page=per_page, page=page)
            if not rows:
                break
            for row in rows:
                quote = _quote_from_market(row)
                if quote is not None and quote.id not in seen:
                    seen[quote.id] = quote
            if len(rows) < per_page:
                break
            page += 1
        return list(seen.values())

    async def list_top_assets(self, limit: int = 100) -> List[AssetQuote]:
        cached = self._cached_assets()
        if cached:
            return cached[:limit]

        if self.is_rate_limited():
            stale = self._assets.get_stale()
            if stale:
                logger.info("Rate limited: serving expired asset cache")
                return stale[:limit]
            return fallback_assets()[:limit]

        try:
            assets = await self._call("list_top_assets", lambda: self._fetch_markets(limit))
        except PriceUnavailable as e:
            logger.warning(f"Asset listing unavailable ({e}), using cached or fallback data")
            stale = self._assets.get_stale()
            return stale[:limit] if stale else fallback_assets()[:limit]

        if not assets:
            return fallback_assets()[:limit]

        self._remember_assets(assets)
        await self._persist_assets()
        self.diagnostics.info(
            LogCategory.API_CALL, "Market data fetched", {"asset_count": len(assets)}
        )
        return assets[:limit]

    async def get_current_prices(self, asset_ids: List[str]) -> Dict[str, Decimal]:
        """Prices for several assets, spending at most one call for the uncached ones."""
        prices: Dict[str, Decimal] = {}
        missing = []
        for asset_id in dict.fromkeys(asset_ids):
            cached = self.cached_price(asset_id)
            if cached is not None:
                prices[asset_id] = cached
            else:
                missing.append(asset_id)
        if not missing:
            return prices

        vs = self.settings.vs_currency
        data = await self._call(
            "get_current_prices", lambda: self.client.get_simple_price(missing, vs)
        )
        for asset_id in missing:
            price = _positive_decimal((data.get(asset_id) or {}).get(vs))
            if price is not None:
                self._prices.set(asset_id, price)
                prices[asset_id] = price
        return prices

    async def get_current_price(self, asset_id: str) -> Decimal:
        """Current price for one asset.

        Raises ``RateLimitExceeded`` when the budget refuses the call and
        ``NetworkFailure`` when upstream cannot supply a price.
        """
        prices = await self.get_current_prices([asset_id])
        if asset_id not in prices:
            raise NetworkFailure(f"No price returned for {asset_id}")
        return prices[asset_id]

    async def get_asset_details(self, asset_id: str, follow_up: bool = False) -> Optional[AssetQuote]:
        """Quote for one asset. ``follow_up`` marks a lookup made right after a
        batched price fetch in the same calculation; it is exempt from call spacing.
        """
        cached = self._cached_assets()
        if cached:
            for asset in cached:
                if asset.id == asset_id:
                    return asset

        if self.is_rate_limited():
            return find_fallback_asset(asset_id)

        vs = self.settings.vs_currency
        try:
            data = await self._call(
                "get_asset_details", lambda: self.client.get_coin(asset_id), respect_min_interval=not follow_up
            )
        except PriceUnavailable as e:
            logger.warning(f"Details for {asset_id} unavailable: {e}")
            return find_fallback_asset(asset_id)

        quote = _quote_from_coin(data, vs)
        if quote is not None:
            self._prices.set(asset_id, quote.current_price)
        return quote

    async def search(self, query: str) -> List[AssetQuote]:
        needle = query.strip().lower()
        if not needle:
            return []

        cached = self._cached_assets()
        if cached:
            local = [a for a in cached if _matches(a, needle)]
            if len(local) >= 5 or self.is_rate_limited():
                return local

        assets = await self.list_top_assets(limit=MAX_PER_PAGE)
        return [a for a in assets if _matches(a, needle)]

    async def get_historical_series(
        self, asset_id: str, days: int = 365, force_refresh: bool = False
    ) -> Optional[HistoricalSeries]:
        key = f"{asset_id}_{days}d"
        if not force_refresh:
            cached = self._historical.get(key)
            if cached is not None:
                return cached

        if self.is_rate_limited():
            return self._historical.get_stale(key)

        try:
            data = await self._call(
                "get_historical_series",
                lambda: self.client.get_market_chart(asset_id, days, self.settings.vs_currency),
            )
        except PriceUnavailable as e:
            logger.warning(f"Historical data for {asset_id} unavailable: {e}")
            return self._historical.get_stale(key)

        points = []
        for item in data.get("prices") or []:
            try:
                ms, raw_price = item[0], item[1]
            except (IndexError, TypeError):
                continue
            price = _positive_decimal(raw_price)
            if price is None or not math.isfinite(ms):
                continue
            points.append(
                PricePoint(timestamp=datetime.fromtimestamp(ms / 1000, tz=timezone.utc), price=price)
            )

        series = HistoricalSeries(asset_id=asset_id, days=days, prices=points, fetched_at=self._clock())
        self._historical.set(key, series)
        await self._persist_historical()
        logger.info(f"Fetched {len(points)} price points over {days} days for {asset_id}")
        return series

    def get_api_status(self) -> Dict[str, Any]:
        now = self._clock()
        resets_at = self._budget.resets_at(now, self.policy)
        entry = self._assets.entry
        return {
            "timestamp": now.isoformat(),
            "rate_limiting": {
                "current_calls": self._budget.calls_in_window(now, self.policy),
                "max_calls": self.policy.max_calls,
                "window_hours": self.policy.window.total_seconds() / 3600,
                "is_rate_limited": self.is_rate_limited(),
                "resets_at": resets_at.isoformat() if resets_at else None,
                "last_call": self._budget.last_call.isoformat() if self._budget.last_call else None,
            },
            "caching": {
                "has_asset_cache": entry is not None,
                "asset_cache_age_minutes": int((now - entry.stored_at).total_seconds() // 60) if entry else None,
                "asset_count": len(entry.value) if entry else 0,
                "historical_series": len(self._historical),
            },
        }
