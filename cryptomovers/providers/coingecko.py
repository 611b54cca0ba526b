import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..core.errors import UpstreamRateLimited, UpstreamUnavailable
from ..core.refresh.policy import FetchMode, RefreshPolicy
from ..types.market import CexCoin
from .base import FetchResult, MarketDataSource

logger = logging.getLogger(__name__)

# Coingecko throttles obvious bot traffic harder than browser traffic
API_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept": "application/json",
    "Referer": "https://www.coingecko.com/",
}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return None
    return None


def normalize_market_coin(item: Dict[str, Any]) -> Optional[CexCoin]:
    """Map one /coins/markets row onto CexCoin. Rows without a symbol are dropped."""
    symbol = item.get("symbol")
    if not item or not symbol:
        return None
    return CexCoin(
        id=str(item.get("id") or symbol),
        symbol=str(symbol),
        name=item.get("name"),
        image=item.get("image"),
        price=_number(item.get("current_price")),
        market_cap=_number(item.get("market_cap")),
        volume_24h=_number(item.get("total_volume")),
        change_24h=_number(item.get("price_change_percentage_24h")),
        change_7d=_number(item.get("price_change_percentage_7d_in_currency")),
        change_30d=_number(item.get("price_change_percentage_30d_in_currency")),
        change_1y=_number(item.get("price_change_percentage_1y_in_currency")),
    )


class CoingeckoMarketsSource(MarketDataSource):
    """Top CEX coins by market cap from Coingecko /coins/markets."""

    name = "coingecko"
    kind = "cex"
    timeout_s = 15

    CACHE_KEY = "market_data_v8"
    LOCK_KEY = "market_data_lock"

    def __init__(
        self,
        *,
        config: Optional[Settings] = None,
        policy: Optional[RefreshPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or default_settings
        super().__init__(
            policy=policy or RefreshPolicy.from_settings(
                config,
                soft_refresh_seconds=config.cex_soft_refresh_seconds,
                retry_delay_seconds=config.cex_retry_delay_seconds,
            ),
            transport=transport,
        )
        self.api_key = config.coingecko_api_key
        self.base_url = config.coingecko_base_url.rstrip("/")
        self.timeout_s = config.request_timeout_seconds
        self.top_n = config.cex_top_n
        self.per_page = config.cex_per_page
        self.sprint_pages = config.cex_sprint_pages
        self.deep_scan_pages = config.cex_deep_scan_pages
        self.page_delay_s = config.cex_page_delay_seconds
        self.max_attempts = config.upstream_max_attempts
        self.retry_delay_s = config.upstream_retry_delay_seconds

    @property
    def cache_key(self) -> str:
        return self.CACHE_KEY

    @property
    def lock_key(self) -> str:
        return self.LOCK_KEY

    def _build_headers(self) -> Dict[str, str]:
        headers = dict(API_HEADERS)
        if self.api_key:
            headers["X-CG-Demo-API-Key"] = self.api_key
        return headers

    def _page_params(self, page: int) -> Dict[str, Any]:
        return {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": self.per_page,
            "page": page,
            "price_change_percentage": "24h,7d,30d,1y",
        }

    async def fetch(self, mode: FetchMode) -> FetchResult:
        page_count = self.deep_scan_pages if mode is FetchMode.DEEP_SCAN else self.sprint_pages
        pages = list(range(1, page_count + 1))
        result = FetchResult()

        async with self._client() as client:
            for index, page in enumerate(pages):
                try:
                    data = await self._request_json(
                        client,
                        f"{self.base_url}/coins/markets",
                        params=self._page_params(page),
                        label=f"page {page}",
                    )
                except UpstreamRateLimited as exc:
                    # Stop hammering a throttled provider; keep what we have
                    result.partial = True
                    result.rate_limited = True
                    result.errors.append(exc.message)
                    break
                except UpstreamUnavailable as exc:
                    if index == 0 and mode is FetchMode.SPRINT:
                        raise
                    result.partial = True
                    result.errors.append(exc.message)
                    continue

                if not isinstance(data, list):
                    result.partial = True
                    result.errors.append(f"{self.name} page {page} returned an unexpected body")
                    continue

                coins = [coin for coin in (normalize_market_coin(row) for row in data if isinstance(row, dict)) if coin]
                result.entities.extend(coins)

                if len(data) < self.per_page:
                    break
                if index < len(pages) - 1 and self.page_delay_s:
                    await asyncio.sleep(self.page_delay_s)

        # Rankings shift between page requests, so neighbouring pages can overlap
        result.entities = dedupe_by_id(result.entities)
        logger.info(
            "Coingecko %s fetch: %d coins, partial=%s",
            mode.value,
            len(result.entities),
            result.partial,
        )
        return result

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/ping")
                response.raise_for_status()
                return {"status": "healthy", "latency_ms": int(response.elapsed.total_seconds() * 1000)}
        except Exception as e:
            return {"status": "error", "reason": str(e)}


def dedupe_by_id(coins: List[CexCoin]) -> List[CexCoin]:
    seen: set[str] = set()
    unique: List[CexCoin] = []
    for coin in coins:
        if coin.id in seen:
            continue
        seen.add(coin.id)
        unique.append(coin)
    return unique
