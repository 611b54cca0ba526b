"""Upstream market-data clients."""

from .base import FetchResult, MarketDataSource
from .coingecko import CoingeckoMarketsSource
from .coinmarketcap import ALL_NETWORKS, SUPPORTED_NETWORKS, CoinMarketCapDexSource, resolve_network

__all__ = [
    "ALL_NETWORKS",
    "SUPPORTED_NETWORKS",
    "CoinMarketCapDexSource",
    "CoingeckoMarketsSource",
    "FetchResult",
    "MarketDataSource",
    "resolve_network",
]
