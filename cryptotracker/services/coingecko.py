import aiohttp
import logging
from typing import Any, Dict, List, Optional

from cryptotracker.errors import NetworkFailure, RateLimitExceeded

logger = logging.getLogger(__name__)

COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"
MAX_PER_PAGE = 250


class CoinGeckoClient:
    """Thin async transport for the CoinGecko public REST API.

    Knows nothing about budgets or caching; ``MarketDataService`` decides
    whether a call may be made. A 429 surfaces as ``RateLimitExceeded`` and
    any other transport problem as ``NetworkFailure``.
    """

    def __init__(
        self,
        base_url: str = COINGECKO_API_BASE,
        api_key: str = "",
        connect_timeout: float = 30,
        read_timeout: float = 45,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._timeout = aiohttp.ClientTimeout(sock_connect=connect_timeout, sock_read=read_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"accept": "application/json"}
            if self.api_key:
                headers["x-cg-demo-api-key"] = self.api_key
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, path: str, params: Optional[Dict] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    logger.warning(f"CoinGecko rate limit hit for {path}")
                    raise RateLimitExceeded(f"429 Too Many Requests for {path}")
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Request failed for {url}: {e}")
            raise NetworkFailure(str(e)) from e
        except TimeoutError as e:
            logger.error(f"Request timed out for {url}")
            raise NetworkFailure(f"timeout for {path}") from e

    async def get_markets(
        self, vs_currency: str = "usd", per_page: int = MAX_PER_PAGE, page: int = 1
    ) -> List[Dict]:
        """Fetch one page of coins ordered by market cap."""
        params = {
            "vs_currency": vs_currency,
            "order": "market_cap_desc",
            "per_page": min(per_page, MAX_PER_PAGE),
            "page": page,
            "sparkline": "false",
            "price_change_percentage": "24h",
        }
        data = await self._request("/coins/markets", params)
        return data if isinstance(data, list) else []

    async def get_simple_price(self, ids: List[str], vs_currency: str = "usd") -> Dict[str, Dict]:
        """Fetch current prices for several coin ids in one call."""
        params = {
            "ids": ",".join(ids),
            "vs_currencies": vs_currency,
            "include_24hr_change": "true",
            "include_last_updated_at": "true",
            "precision": "6",
        }
        data = await self._request("/simple/price", params)
        return data if isinstance(data, dict) else {}

    async def get_coin(self, coin_id: str) -> Dict:
        """Fetch detailed coin data."""
        params = {
            "localization": "false",
            "tickers": "false",
            "community_data": "false",
            "developer_data": "false",
        }
        data = await self._request(f"/coins/{coin_id}", params)
        return data if isinstance(data, dict) else {}

    async def get_market_chart(self, coin_id: str, days: int, vs_currency: str = "usd") -> Dict:
        """Fetch a historical price series covering ``days`` days."""
        params = {"vs_currency": vs_currency, "days": str(days)}
        # Granularity is automatic for short ranges
        if days > 90:
            params["interval"] = "daily"
        data = await self._request(f"/coins/{coin_id}/market_chart", params)
        return data if isinstance(data, dict) else {}
