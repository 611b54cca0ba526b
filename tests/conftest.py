"""Shared fakes for the refresh engine and HTTP surface tests."""

import asyncio
import json
from typing import Dict, List, Optional, Union

import pytest

from cryptomovers.core.refresh import BackgroundScheduler, FetchMode, RefreshPolicy
from cryptomovers.providers.base import FetchResult, MarketDataSource
from cryptomovers.services.assets import AssetNotFound, AssetStore
from cryptomovers.services.exclusions import ExclusionFilter
from cryptomovers.services.kv_store import MemoryKVStore
from cryptomovers.types.market import CachedPayload, CexCoin

MINUTE_MS = 60_000
NOW_MS = 1_700_000_000_000

EXCLUSION_FILES = [
    "/exclusions/stablecoins-exclusion-list.json",
    "/exclusions/wrapped-tokens-exclusion-list.json",
]


class FakeClock:
    """Epoch-ms clock the test moves by hand."""

    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class InMemoryAssets(AssetStore):
    def __init__(self, documents: Dict[str, bytes]):
        self.documents = documents
        self.reads: List[str] = []

    async def read(self, path: str) -> bytes:
        self.reads.append(path)
        if path not in self.documents:
            raise AssetNotFound(path)
        return self.documents[path]


class FakeSource(MarketDataSource):
    """Scripted data source. Each fetch pops the next outcome."""

    name = "fake"
    kind = "cex"

    def __init__(
        self,
        policy: RefreshPolicy,
        outcomes: Optional[List[Union[FetchResult, Exception]]] = None,
        *,
        delay: float = 0.0,
    ):
        super().__init__(policy=policy)
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.modes: List[FetchMode] = []

    @property
    def cache_key(self) -> str:
        return "test_data"

    @property
    def lock_key(self) -> str:
        return "test_lock"

    async def fetch(self, mode: FetchMode) -> FetchResult:
        self.modes.append(mode)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else FetchResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def coin(symbol: str, change: Optional[float], price: Optional[float] = 1.0, **extra) -> CexCoin:
    return CexCoin(id=symbol.lower(), symbol=symbol, name=symbol, price=price, change_24h=change, **extra)


def stored_payload(timestamp: int, last_update_attempt: Optional[int] = None, **extra) -> CachedPayload:
    return CachedPayload(
        timestamp=timestamp,
        last_update_attempt=timestamp if last_update_attempt is None else last_update_attempt,
        gainers=[coin("OLD", 5.0).public_fields()],
        losers=[coin("OLD", 5.0).public_fields()],
        **extra,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return RefreshPolicy(
        soft_refresh_ms=12 * MINUTE_MS,
        min_retry_delay_ms=2 * MINUTE_MS,
        blocking_timeout_seconds=2.0,
        background_timeout_seconds=2.0,
        cold_start_poll_seconds=0.01,
    )


@pytest.fixture
def kv():
    return MemoryKVStore(max_size=100)


@pytest.fixture
def scheduler():
    return BackgroundScheduler(default_timeout=5)


@pytest.fixture
def assets():
    return InMemoryAssets(
        {
            EXCLUSION_FILES[0]: json.dumps(["USDT", "usdc"]).encode(),
            EXCLUSION_FILES[1]: json.dumps(["wbtc"]).encode(),
        }
    )


@pytest.fixture
def exclusions(assets):
    return ExclusionFilter(assets, EXCLUSION_FILES)
