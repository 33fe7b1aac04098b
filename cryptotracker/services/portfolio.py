import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from cryptotracker.config import Settings, get_settings
from cryptotracker.errors import PriceUnavailable, RateLimitExceeded
from cryptotracker.schemas.portfolio import (
    Holding,
    PortfolioExport,
    PortfolioSummary,
    RefreshResponse,
)
from cryptotracker.schemas.snapshot import PLSnapshot, TimeSeriesPoint
from cryptotracker.schemas.transaction import Transaction, TransactionKind
from cryptotracker.services.cache import Clock, TimedCache, TimedMapCache, utcnow
from cryptotracker.services.diagnostics import DiagnosticsService, LogCategory
from cryptotracker.services.ledger import TransactionService
from cryptotracker.services.market_data import MarketDataService
from cryptotracker.services.pl_persistence import PLPersistenceService, percentage_of
from cryptotracker.services.ratelimit import RefreshCooldown
from cryptotracker.services.storage import KeyValueStore
from cryptotracker.services.updates import PortfolioUpdates

logger = logging.getLogger(__name__)

PRICES_CACHE_KEY = "crypto_prices_cache_v4"
REFRESH_STATE_KEY = "last_api_refresh_v4"

ZERO_RESET_COUNTER = "portfolio.zero_reset_guard"
DEFAULT_PRICE = Decimal("1")


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CALCULATING = "calculating"


@dataclass
class PositionBasis:
    """Net amount and cost basis for one asset before pricing."""

    asset_id: str
    symbol: str
    name: str
    icon_url: str = ""
    exchange: str = "Unknown"
    net_amount: Decimal = Decimal("0")
    total_invested: Decimal = Decimal("0")
    transaction_count: int = 0

    @property
    def average_price(self) -> Decimal:
        if self.net_amount == 0:
            return Decimal("0")
        return abs(self.total_invested) / self.net_amount

    def apply(self, transaction: Transaction) -> None:
        self.transaction_count += 1
        self.exchange = transaction.exchange
        if transaction.kind == TransactionKind.BUY:
            self.net_amount += transaction.amount
            self.total_invested += transaction.total_value
            return
        # Average-cost depletion against the pre-sell amount
        self.net_amount -= transaction.amount
        if self.net_amount > 0:
            self.total_invested -= self.total_invested * (
                transaction.amount / (self.net_amount + transaction.amount)
            )


def aggregate_positions(transactions: List[Transaction]) -> List[PositionBasis]:
    """Fold transactions (oldest first) into per-asset positions, dropping non-positive ones."""
    positions: Dict[str, PositionBasis] = {}
    for t in sorted(transactions, key=lambda t: t.timestamp):
        basis = positions.get(t.asset_id)
        if basis is None:
            basis = positions[t.asset_id] = PositionBasis(
                asset_id=t.asset_id, symbol=t.symbol, name=t.name, icon_url=t.icon_url
            )
        basis.apply(t)
    return [p for p in positions.values() if p.net_amount > 0]


def summarize(
    holdings: List[Holding], transaction_count: int, now: datetime, method: str
) -> PortfolioSummary:
    total_value = Decimal("0")
    total_invested = Decimal("0")
    for h in holdings:
        if h.current_price > 0 and h.net_amount > 0:
            total_value += h.current_price * h.net_amount
        total_invested += abs(h.total_invested)
    profit_loss = total_value - total_invested
    return PortfolioSummary(
        total_value=total_value,
        total_invested=total_invested,
        profit_loss=profit_loss,
        percentage_change=percentage_of(profit_loss, total_invested),
        holdings_count=len(holdings),
        transaction_count=transaction_count,
        last_updated=now,
        calculated_at=now,
        calculation_method=method,
    )


@dataclass
class Calculation:
    holdings: List[Holding]
    summary: PortfolioSummary
    transaction_count: int
    rate_limited: bool = False
    fetched: Set[str] = field(default_factory=set)


class PortfolioService:
    """Valuation engine: ledger in, priced holdings and a persisted summary out.

    Calculations are single-flight. A caller arriving while one is running
    awaits that run instead of starting another. Network price lookups are
    only attempted by ``refresh`` (outside the cooldown) and
    ``force_manual_refresh``; everything else prices from cache, falling
    back to each holding's average price.
    """

    def __init__(
        self,
        ledger: TransactionService,
        persistence: PLPersistenceService,
        market: MarketDataService,
        store: KeyValueStore,
        diagnostics: DiagnosticsService,
        updates: Optional[PortfolioUpdates] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.persistence = persistence
        self.market = market
        self.store = store
        self.diagnostics = diagnostics
        self.portfolio_updates = updates or PortfolioUpdates()
        self.settings = settings or get_settings()
        self._clock = clock

        self.cooldown_period = timedelta(hours=self.settings.refresh_cooldown_hours)
        self.manual_penalty = timedelta(hours=self.settings.manual_refresh_penalty_hours)
        self.price_ttl = timedelta(hours=self.settings.price_cache_hours)

        self.state = EngineState.UNINITIALIZED
        self.cooldown = RefreshCooldown()
        self._summary: TimedCache[PortfolioSummary] = TimedCache(clock=clock)
        self._holdings: TimedCache[List[Holding]] = TimedCache(clock=clock)
        self._prices: TimedMapCache[str, Decimal] = TimedMapCache(self.price_ttl, clock)
        self._inflight: Optional[asyncio.Task] = None

    async def initialize(self) -> Optional[PortfolioSummary]:
        """Restore the last snapshot without touching the network."""
        if self.state != EngineState.UNINITIALIZED:
            return self.get_cached_summary()

        await self.market.initialize()
        await self._load_price_cache()
        self.cooldown = RefreshCooldown.from_dict(await self.store.get_json(REFRESH_STATE_KEY))

        snapshot = await self.persistence.load_snapshot()
        if snapshot is not None:
            self._summary.set(self._summary_from_snapshot(snapshot), snapshot.timestamp)
            self.state = EngineState.READY
            logger.info(
                f"Restored portfolio snapshot: value=${snapshot.total_value:.2f}, "
                f"pl=${snapshot.profit_loss:.2f}"
            )
        elif await self.ledger.has_transactions():
            self.state = EngineState.READY
            logger.info("No snapshot found, running offline calculation")
            await self.recalculate(source="initialize_offline")
        else:
            self.state = EngineState.READY

        self.diagnostics.info(
            LogCategory.SYSTEM,
            "Portfolio engine initialized",
            {"restored": snapshot is not None, "cooldown_until": self._iso(self.cooldown.cooldown_until)},
        )
        return self.get_cached_summary()

    def _summary_from_snapshot(self, snapshot: PLSnapshot) -> PortfolioSummary:
        return PortfolioSummary(
            total_value=snapshot.total_value,
            total_invested=snapshot.total_invested,
            profit_loss=snapshot.profit_loss,
            percentage_change=snapshot.percentage_change,
            holdings_count=int(snapshot.extra.get("holdings_count", 0)),
            transaction_count=snapshot.transaction_count,
            last_updated=snapshot.timestamp,
            calculated_at=snapshot.timestamp,
            calculation_method="snapshot_restore",
        )

    async def _load_price_cache(self) -> None:
        raw = await self.store.get_json(PRICES_CACHE_KEY, {})
        if not isinstance(raw, dict):
            return
        for asset_id, entry in raw.items():
            try:
                price = Decimal(str(entry["price"]))
                cached_at = datetime.fromisoformat(entry["cached_at"])
            except (KeyError, TypeError, ValueError, ArithmeticError):
                continue
            if price.is_finite() and price > 0:
                self._prices.set(asset_id, price, cached_at)

    async def _save_price_cache(self) -> None:
        payload = {
            asset_id: {"price": str(entry.value), "cached_at": entry.stored_at.isoformat()}
            for asset_id, entry in self._prices.items()
        }
        if not await self.store.set_json(PRICES_CACHE_KEY, payload):
            logger.warning("Failed to persist price cache")

    async def _save_cooldown(self) -> None:
        if not await self.store.set_json(REFRESH_STATE_KEY, self.cooldown.to_dict()):
            logger.warning("Failed to persist refresh cooldown")

    def _cached_price(self, asset_id: str) -> Optional[Decimal]:
        price = self._prices.get(asset_id)
        if price is None:
            price = self.market.cached_price(asset_id)
        return price if price is not None and price > 0 else None

    async def _fetch_live_prices(self, asset_ids: List[str], calc: Calculation) -> None:
        if not asset_ids:
            return
        try:
            prices = await self.market.get_current_prices(asset_ids)
        except RateLimitExceeded as e:
            logger.warning(f"Live prices refused: {e}")
            calc.rate_limited = self.market.is_rate_limited()
            return
        except PriceUnavailable as e:
            logger.warning(f"Live prices unavailable: {e}")
            return
        for asset_id, price in prices.items():
            if price > 0:
                self._prices.set(asset_id, price)
                calc.fetched.add(asset_id)

    async def _details_price(self, asset_id: str) -> Optional[Decimal]:
        quote = await self.market.get_asset_details(asset_id, follow_up=True)
        if quote is None or quote.is_fallback or quote.current_price <= 0:
            return None
        self._prices.set(asset_id, quote.current_price)
        return quote.current_price

    async def _resolve_price(
        self, basis: PositionBasis, calc: Calculation, allow_network: bool, fresh: bool
    ) -> Tuple[Decimal, str]:
        if basis.asset_id in calc.fetched:
            return self._prices.get_stale(basis.asset_id), "live"

        if not fresh:
            cached = self._cached_price(basis.asset_id)
            if cached is not None:
                return cached, "cache"

        if allow_network and not calc.rate_limited and not self.market.is_rate_limited():
            price = await self._details_price(basis.asset_id)
            if price is not None:
                return price, "details"
            calc.rate_limited = self.market.is_rate_limited()

        if fresh:
            stale = self._prices.get_stale(basis.asset_id)
            if stale is not None and stale > 0:
                return stale, "cache"

        average = basis.average_price
        if average > 0:
            return average, "average"
        return DEFAULT_PRICE, "default"

    async def _compute(self, allow_network: bool, fresh: bool, source: str) -> Calculation:
        transactions = await self.ledger.list_all()
        positions = aggregate_positions(transactions)
        now = self._clock()
        calc = Calculation(holdings=[], summary=PortfolioSummary(), transaction_count=len(transactions))

        if allow_network and positions:
            if self.market.is_rate_limited():
                calc.rate_limited = True
            else:
                wanted = [
                    p.asset_id for p in positions if fresh or self._cached_price(p.asset_id) is None
                ]
                await self._fetch_live_prices(wanted, calc)

        for basis in positions:
            price, price_source = await self._resolve_price(basis, calc, allow_network, fresh)
            calc.holdings.append(
                Holding(
                    asset_id=basis.asset_id,
                    symbol=basis.symbol,
                    name=basis.name,
                    icon_url=basis.icon_url,
                    net_amount=basis.net_amount,
                    total_invested=basis.total_invested,
                    average_price=basis.average_price,
                    current_price=price,
                    price_source=price_source,
                    transaction_count=basis.transaction_count,
                    exchange=basis.exchange,
                    calculated_at=now,
                )
            )

        calc.summary = summarize(calc.holdings, len(transactions), now, source)
        return calc

    async def _commit(self, calc: Calculation, source: str) -> PortfolioSummary:
        summary = calc.summary
        report = await self.persistence.validate_consistency(
            summary.total_value, summary.total_invested, summary.profit_loss
        )
        if not report.is_valid:
            profit_loss = summary.total_value - summary.total_invested
            summary = summary.model_copy(
                update={
                    "profit_loss": profit_loss,
                    "percentage_change": percentage_of(profit_loss, summary.total_invested),
                }
            )

        saved = await self.persistence.save_snapshot(
            summary.total_value,
            summary.total_invested,
            summary.profit_loss,
            summary.percentage_change,
            calc.transaction_count,
            source=source,
            extra={
                "holdings_count": summary.holdings_count,
                "price_sources": {h.asset_id: h.price_source for h in calc.holdings},
            },
        )
        if not saved:
            logger.warning(f"Snapshot not persisted for {source} calculation")

        if calc.fetched:
            await self._save_price_cache()

        self._summary.set(summary)
        self._holdings.set(calc.holdings)
        self.portfolio_updates.publish(calc.holdings)
        await self.persistence.log_calculation(
            {"event": "calculation", "source": source, "holdings": summary.holdings_count,
             "total_value": str(summary.total_value), "profit_loss": str(summary.profit_loss),
             "live_prices": len(calc.fetched)}
        )
        logger.info(
            f"Portfolio calculated ({source}): value=${summary.total_value:.2f}, "
            f"invested=${summary.total_invested:.2f}, pl=${summary.profit_loss:.2f}"
        )
        return summary

    async def _guard_zero_reset(
        self, calc: Calculation, previous: Optional[PortfolioSummary]
    ) -> Optional[PortfolioSummary]:
        """Previous values if ``calc`` looks like a spurious reset to zero, else None."""
        summary = calc.summary
        if summary.total_value != 0 or summary.profit_loss != 0 or calc.transaction_count == 0:
            return None
        if previous is None or previous.profit_loss == 0 or previous.total_value <= 0:
            return None

        snapshot = await self.persistence.load_snapshot()
        restored = self._summary_from_snapshot(snapshot) if snapshot is not None else previous
        self._summary.set(restored)
        self.diagnostics.increment(ZERO_RESET_COUNTER)
        self.diagnostics.warning(
            LogCategory.SYSTEM,
            "Zero-reset guard restored previous portfolio values",
            {"previous_value": str(restored.total_value), "previous_pl": str(restored.profit_loss),
             "transactions": calc.transaction_count},
        )
        return restored

    async def _run(self, allow_network: bool, fresh: bool, guard: bool, source: str) -> PortfolioSummary:
        previous = self._summary.get_stale()
        self.state = EngineState.CALCULATING
        try:
            calc = await self._compute(allow_network, fresh, source)
            if guard:
                restored = await self._guard_zero_reset(calc, previous)
                if restored is not None:
                    return restored
            return await self._commit(calc, source)
        except Exception as e:
            logger.error(f"Portfolio calculation failed ({source}): {e}", exc_info=True)
            self.diagnostics.error(LogCategory.ERROR, "Portfolio calculation failed", {"source": source, "error": str(e)})
            return previous or PortfolioSummary()
        finally:
            self.state = EngineState.READY

    async def _single_flight(
        self, allow_network: bool, fresh: bool, guard: bool, source: str
    ) -> PortfolioSummary:
        if self._inflight is not None and not self._inflight.done():
            logger.debug(f"Calculation already in flight, {source} joins it")
            return await asyncio.shield(self._inflight)
        self._inflight = asyncio.create_task(self._run(allow_network, fresh, guard, source))
        return await asyncio.shield(self._inflight)

    async def _wait_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])

    async def recalculate(self, allow_network: bool = False, source: str = "recalculate") -> PortfolioSummary:
        return await self._single_flight(allow_network, fresh=False, guard=False, source=source)

    async def refresh(self) -> RefreshResponse:
        """Recompute, using the network only when the cooldown has expired."""
        await self._wait_inflight()
        now = self._clock()
        allowed = self.cooldown.is_allowed(now)
        if not allowed:
            logger.info(f"Refresh in cooldown for {self.cooldown.remaining(now)}, using cached prices")

        summary = await self._single_flight(
            allow_network=allowed, fresh=False, guard=True, source="refresh" if allowed else "refresh_cached"
        )
        if allowed:
            self.cooldown = self.cooldown.mark_completed(self._clock(), self.cooldown_period)
            await self._save_cooldown()

        return RefreshResponse(
            status="refreshed" if allowed else "cooldown",
            network_allowed=allowed,
            next_refresh_at=self.cooldown.cooldown_until,
            summary=summary,
        )

    async def force_manual_refresh(self) -> RefreshResponse:
        """Refresh now regardless of cooldown; an early refresh extends the next cooldown."""
        now = self._clock()
        expired = self.cooldown.is_allowed(now)
        self.diagnostics.info(
            LogCategory.USER_ACTION, "Manual refresh requested", {"cooldown_expired": expired}
        )

        await self._wait_inflight()
        summary = await self._single_flight(
            allow_network=True, fresh=True, guard=True, source="manual_refresh"
        )

        finished = self._clock()
        if expired:
            self.cooldown = self.cooldown.mark_completed(finished, self.cooldown_period)
        else:
            self.cooldown = self.cooldown.with_penalty(finished, self.cooldown_period, self.manual_penalty)
            logger.info(f"Manual refresh during cooldown, next refresh at {self.cooldown.cooldown_until}")
        await self._save_cooldown()

        return RefreshResponse(
            status="refreshed",
            network_allowed=True,
            next_refresh_at=self.cooldown.cooldown_until,
            summary=summary,
        )

    async def on_transaction_mutated(self, event: str = "mutation", transaction: Optional[Transaction] = None) -> None:
        """Ledger hook: recalculate from cached or average prices, ignoring the cooldown."""
        await self._wait_inflight()
        await self.recalculate(source=f"transaction_{event}")

    def get_cached_summary(self) -> Optional[PortfolioSummary]:
        return self._summary.get_stale()

    async def get_holdings_with_current_prices(self) -> List[Holding]:
        holdings = self._holdings.get_stale()
        if holdings is None and await self.ledger.has_transactions():
            await self.recalculate(source="holdings_request")
            holdings = self._holdings.get_stale()
        return holdings or []

    async def get_holding(self, asset_id: str) -> Optional[Holding]:
        for holding in await self.get_holdings_with_current_prices():
            if holding.asset_id == asset_id:
                return holding
        return None

    async def delete_asset(self, asset_id: str) -> bool:
        removed = await self.ledger.remove_by_asset(asset_id, notify=False)
        if removed == 0:
            return False
        self.diagnostics.info(
            LogCategory.USER_ACTION, "Asset deleted from portfolio", {"asset_id": asset_id, "transactions": removed}
        )
        await self._wait_inflight()
        await self.recalculate(source="delete_asset")
        return True

    async def clear_cache(self) -> None:
        self._summary.invalidate()
        self._holdings.invalidate()
        self._prices.invalidate()
        await self.store.remove(PRICES_CACHE_KEY)
        logger.info("Portfolio caches cleared")

    async def is_portfolio_empty(self) -> bool:
        return not await self.ledger.has_transactions()

    def should_recommend_refresh(self) -> bool:
        summary = self.get_cached_summary()
        if summary is None or summary.last_updated is None:
            return True
        return self._clock() - summary.last_updated >= self.price_ttl

    async def get_time_series(self, period: Optional[timedelta] = None) -> List[TimeSeriesPoint]:
        return await self.persistence.get_time_series(period)

    async def export_portfolio(self) -> PortfolioExport:
        holdings = await self.get_holdings_with_current_prices()
        return PortfolioExport(
            exported_at=self._clock(),
            user_id=self.ledger.user_id,
            summary=self.get_cached_summary() or PortfolioSummary(),
            holdings=holdings,
            total_holdings=len(holdings),
            diagnostics={"state": self.state.value, "cooldown": self.cooldown.to_dict()},
        )

    @staticmethod
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    async def get_diagnostics(self) -> Dict[str, Any]:
        now = self._clock()
        summary = self.get_cached_summary()
        consistency = None
        if summary is not None:
            report = await self.persistence.validate_consistency(
                summary.total_value, summary.total_invested, summary.profit_loss
            )
            consistency = report.model_dump(mode="json")
        return {
            "timestamp": now.isoformat(),
            "state": self.state.value,
            "calculation_in_flight": self._inflight is not None and not self._inflight.done(),
            "cooldown": {
                **self.cooldown.to_dict(),
                "refresh_allowed": self.cooldown.is_allowed(now),
                "remaining_minutes": int(self.cooldown.remaining(now).total_seconds() // 60),
            },
            "caches": {
                "has_summary": summary is not None,
                "holdings": len(self._holdings.get_stale() or []),
                "prices": len(self._prices),
            },
            "summary": summary.model_dump(mode="json") if summary else None,
            "consistency": consistency,
            "zero_reset_guards": self.diagnostics.count(ZERO_RESET_COUNTER),
            "market": self.market.get_api_status(),
            "persistence": await self.persistence.get_diagnostic_info(),
        }
