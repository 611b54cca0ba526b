"""Request orchestration for the stats endpoints.

Owns the long-lived collaborators (KV store, background scheduler, exclusion
filter) and one data source per cache key, and hands each request to the
refresh engine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from ..config import Settings, settings as default_settings
from ..core.errors import ConfigurationError
from ..core.refresh import BackgroundScheduler, FetchMode, RefreshEngine, ServeResult
from ..providers.base import MarketDataSource
from ..providers.coingecko import CoingeckoMarketsSource
from ..providers.coinmarketcap import CoinMarketCapDexSource, resolve_network
from ..types.market import CachedPayload
from .assets import AssetStore, create_asset_store
from .exclusions import ExclusionFilter
from .kv_store import KVStore, create_kv_store

logger = logging.getLogger(__name__)


class MarketStatsService:
    """Maps routed requests to data sources and serves them through the engine."""

    def __init__(
        self,
        *,
        config: Optional[Settings] = None,
        kv: Optional[KVStore] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        assets: Optional[AssetStore] = None,
        clock: Optional[Callable[[], int]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self._transport = transport
        self._kv_error: Optional[ConfigurationError] = None

        if kv is None:
            try:
                kv = create_kv_store(self.config)
            except ConfigurationError as exc:
                # Surfaced per request so the static site still serves
                logger.error("KV store unavailable: %s", exc.message)
                self._kv_error = exc
        self.kv = kv

        self.scheduler = scheduler or BackgroundScheduler(
            default_timeout=self.config.background_refresh_timeout_seconds
        )
        self.exclusions = ExclusionFilter(
            assets or create_asset_store(self.config),
            self.config.exclusion_files,
        )
        self.engine = (
            RefreshEngine(kv=kv, exclusions=self.exclusions, scheduler=self.scheduler, clock=clock)
            if kv is not None
            else None
        )
        self._sources: Dict[str, MarketDataSource] = {}

    # ---------------------------
    # Source routing
    # ---------------------------
    def cex_source(self) -> MarketDataSource:
        key = "cex"
        if key not in self._sources:
            self._sources[key] = CoingeckoMarketsSource(config=self.config, transport=self._transport)
        return self._sources[key]

    def dex_source(self, network: Optional[str]) -> MarketDataSource:
        resolved = resolve_network(network)
        key = f"dex:{resolved}"
        if key not in self._sources:
            self._sources[key] = CoinMarketCapDexSource(
                resolved,
                kv=self._require_kv(),
                config=self.config,
                transport=self._transport,
            )
        return self._sources[key]

    def source_for(self, network: Optional[str], *, dex_only: bool = False) -> MarketDataSource:
        """`/api/stats` without a network is the CEX feed; anything else is DEX."""
        if network is None and not dex_only:
            return self.cex_source()
        return self.dex_source(network)

    # ---------------------------
    # Serving
    # ---------------------------
    def _require_kv(self) -> KVStore:
        if self._kv_error is not None:
            raise self._kv_error
        if self.kv is None:
            raise ConfigurationError("KV_STORE binding missing")
        return self.kv

    async def serve(self, source: MarketDataSource) -> ServeResult:
        self._require_kv()
        source.ensure_configured()
        return await self.engine.serve(source)

    async def refresh(self, source: MarketDataSource, *, deep: bool = False) -> CachedPayload:
        """Run one refresh outside the request path (CLI)."""
        self._require_kv()
        source.ensure_configured()
        snapshot = await self.engine.read_snapshot(source)
        mode = FetchMode.DEEP_SCAN if deep else FetchMode.SPRINT
        return await self.engine.refresh(source, mode=mode, prior=snapshot.payload)

    async def health(self) -> Dict[str, Any]:
        providers = await asyncio.gather(
            self.cex_source().health_check(),
            CoinMarketCapDexSource(
                "all",
                kv=self.kv,
                config=self.config,
                transport=self._transport,
            ).health_check(),
        )
        kv_status: Dict[str, Any]
        if self.kv is None:
            kv_status = {"status": "error", "reason": "KV_STORE binding missing"}
        else:
            kv_status = {
                "status": "healthy" if await self.kv.ping() else "error",
                "backend": self.kv.name,
            }
        return {
            "providers": {"coingecko": providers[0], "coinmarketcap": providers[1]},
            "kv": kv_status,
            "background_tasks": self.scheduler.inflight,
        }

    async def aclose(self) -> None:
        await self.scheduler.drain(self.config.scheduler_drain_timeout_seconds)
        if self.kv is not None:
            await self.kv.close()


_default_service: Optional[MarketStatsService] = None


def get_market_stats_service() -> MarketStatsService:
    """Get or create the process-wide MarketStatsService (FastAPI dependency)."""
    global _default_service
    if _default_service is None:
        _default_service = MarketStatsService()
    return _default_service


async def shutdown_market_stats_service() -> None:
    global _default_service
    if _default_service is not None:
        await _default_service.aclose()
        _default_service = None


__all__ = [
    "MarketStatsService",
    "get_market_stats_service",
    "shutdown_market_stats_service",
]
