"""
CoinMarketCap DEX API Provider

Top moving DEX spot pairs per network:
- /v4/dex/networks/list      network slug discovery (cached 24h in KV)
- /v4/dex/spot-pairs/latest  scroll-paginated pairs
- /v2/cryptocurrency/info    logos for the ranked pairs

Docs: https://coinmarketcap.com/api/documentation/v1/
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config import Settings, settings as default_settings
from ..core.errors import ConfigurationError, StoreError, UpstreamRateLimited, UpstreamUnavailable
from ..core.ranking import RankedLists
from ..core.refresh.policy import FetchMode, RefreshPolicy
from ..services.kv_store import KVStore
from ..types.market import DexPair, RankedEntity
from .base import FetchResult, MarketDataSource

logger = logging.getLogger(__name__)

ALL_NETWORKS = "all"
SUPPORTED_NETWORKS: Tuple[str, ...] = ("solana", "ethereum", "bnb", "base")

NETWORK_ALIASES = {
    "sol": "solana",
    "eth": "ethereum",
    "bsc": "bnb",
    "binance": "bnb",
}

# Substrings of CMC network names that identify each supported network
NETWORK_NAME_MATCHERS: Dict[str, Tuple[str, ...]] = {
    "solana": ("solana",),
    "ethereum": ("ethereum",),
    "bnb": ("bnb", "binance"),
    "base": ("base",),
}

DEFAULT_NETWORK_SLUGS: Dict[str, str] = {
    "ethereum": "ethereum",
    "solana": "solana",
    "bnb": "bnb",
    "base": "base",
}

NETWORKS_CACHE_KEY = "dex_networks_map"


def resolve_network(value: Optional[str]) -> str:
    """Canonical network id for a query value.

    Unknown or empty values resolve to the all-networks aggregate.
    """
    if not value:
        return ALL_NETWORKS
    key = value.strip().lower()
    key = NETWORK_ALIASES.get(key, key)
    if key in SUPPORTED_NETWORKS:
        return key
    return ALL_NETWORKS


def _match_network(name: str) -> Optional[str]:
    lowered = name.lower()
    for network in SUPPORTED_NETWORKS:
        if any(token in lowered for token in NETWORK_NAME_MATCHERS[network]):
            return network
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _quote_value(raw: Dict[str, Any], key: str) -> Any:
    """Read a market field from the pair, falling back to its first quote."""
    value = raw.get(key)
    if value is not None:
        return value
    quotes = raw.get("quote")
    if isinstance(quotes, list) and quotes and isinstance(quotes[0], dict):
        return quotes[0].get(key)
    if isinstance(quotes, dict):
        first = next(iter(quotes.values()), None)
        if isinstance(first, dict):
            return first.get(key)
    return None


def normalize_spot_pair(raw: Dict[str, Any], *, slug_to_network: Dict[str, str]) -> Optional[DexPair]:
    symbol = raw.get("base_asset_symbol")
    if not symbol:
        return None

    platform = raw.get("platform")
    platform_name = platform.get("name") if isinstance(platform, dict) else None
    slug = raw.get("network_slug")
    network = slug_to_network.get(slug) if slug else None
    if network is None and platform_name:
        network = _match_network(platform_name)

    contract = raw.get("base_asset_contract_address")
    pair_id = raw.get("contract_address") or f"{network or slug}:{contract or symbol}"
    asset_id = raw.get("base_asset_id")

    return DexPair(
        id=str(pair_id),
        symbol=str(symbol),
        name=raw.get("base_asset_name"),
        contract=contract,
        platform=platform_name or "Unknown",
        network=network,
        price=_number(_quote_value(raw, "price")),
        change_24h=_number(_quote_value(raw, "percent_change_24h")),
        volume_24h=_number(_quote_value(raw, "volume_24h")),
        liquidity=_number(_quote_value(raw, "liquidity")),
        fully_diluted_value=_number(
            _quote_value(raw, "fully_diluted_value") or _quote_value(raw, "market_cap")
        ),
        dex_url=raw.get("dex_url"),
        asset_id=int(asset_id) if str(asset_id or "").isdigit() else None,
    )


class NetworkDirectory:
    """Resolves canonical network ids to CMC network slugs."""

    def __init__(
        self,
        *,
        kv: KVStore,
        api_key: str,
        base_url: str,
        ttl_seconds: int = 86_400,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._kv = kv
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._ttl = ttl_seconds
        self._transport = transport

    async def slugs(self) -> Dict[str, str]:
        cached = await self._read_cache()
        if cached:
            return cached

        try:
            discovered = await self._discover()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Network discovery failed, using defaults: %s", exc)
            return dict(DEFAULT_NETWORK_SLUGS)

        if not discovered:
            return dict(DEFAULT_NETWORK_SLUGS)

        merged = {**DEFAULT_NETWORK_SLUGS, **discovered}
        try:
            await self._kv.put(NETWORKS_CACHE_KEY, json.dumps(merged), ttl_seconds=self._ttl)
        except StoreError as exc:
            logger.warning("Could not cache network slugs: %s", exc)
        return merged

    async def _read_cache(self) -> Optional[Dict[str, str]]:
        try:
            raw = await self._kv.get(NETWORKS_CACHE_KEY)
        except StoreError as exc:
            logger.warning("Could not read cached network slugs: %s", exc)
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if isinstance(data, dict) and all(isinstance(v, str) for v in data.values()):
            return data
        return None

    async def _discover(self) -> Dict[str, str]:
        async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
            response = await client.get(
                f"{self._base_url}/v4/dex/networks/list",
                headers={"X-CMC_PRO_API_KEY": self._api_key, "Accept": "application/json"},
            )
            response.raise_for_status()
            payload = response.json()

        found: Dict[str, str] = {}
        entries = payload.get("data") if isinstance(payload, dict) else None
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name") or "")
            slug = entry.get("network_slug")
            network = _match_network(name)
            # First match wins; later entries are usually testnets or forks
            if network and slug and network not in found:
                found[network] = slug
        return found


@dataclass
class _PartitionResult:
    pairs: List[Dict[str, Any]] = field(default_factory=list)
    partial: bool = False
    rate_limited: bool = False
    errors: List[str] = field(default_factory=list)


class CoinMarketCapDexSource(MarketDataSource):
    """DEX spot pairs for one network (or all supported networks)."""

    name = "coinmarketcap"
    kind = "dex"
    split_by_sign = True

    CACHE_KEY_PREFIX = "dex_data_v8"
    LOCK_KEY_PREFIX = "dex_data_lock"
    SORT_PARTITIONS = ("desc", "asc")

    def __init__(
        self,
        network: str,
        *,
        kv: KVStore,
        config: Optional[Settings] = None,
        policy: Optional[RefreshPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or default_settings
        super().__init__(
            policy=policy or RefreshPolicy.from_settings(
                config,
                soft_refresh_seconds=config.dex_soft_refresh_seconds,
                retry_delay_seconds=config.dex_retry_delay_seconds,
            ),
            transport=transport,
        )
        self.network = resolve_network(network)
        self.api_key = config.cmc_pro_api_key
        self.base_url = config.cmc_base_url.rstrip("/")
        self.timeout_s = config.request_timeout_seconds
        self.top_n = config.dex_top_n
        self.page_limit = config.dex_page_limit
        self.sprint_pages = config.dex_sprint_pages
        self.deep_scan_pages = config.dex_deep_scan_pages
        self.min_liquidity = config.dex_min_liquidity_usd
        self.fake_mc_threshold = config.dex_fake_mc_threshold_usd
        self.fake_mc_min_liquidity = config.dex_fake_mc_min_liquidity_usd
        self.metadata_limit = config.dex_metadata_limit
        self.placeholder_image = config.placeholder_image_url
        self.max_attempts = config.upstream_max_attempts
        self.retry_delay_s = config.upstream_retry_delay_seconds
        self.directory = NetworkDirectory(
            kv=kv,
            api_key=self.api_key,
            base_url=self.base_url,
            ttl_seconds=config.dex_networks_cache_ttl_seconds,
            transport=transport,
        )

    @property
    def cache_key(self) -> str:
        return f"{self.CACHE_KEY_PREFIX}:{self.network}"

    @property
    def lock_key(self) -> str:
        return f"{self.LOCK_KEY_PREFIX}:{self.network}"

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Server Config Error: Missing CMC Key", provider=self.name)

    def _build_headers(self) -> Dict[str, str]:
        return {"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"}

    async def fetch(self, mode: FetchMode) -> FetchResult:
        self.ensure_configured()
        slugs = await self.directory.slugs()
        if self.network == ALL_NETWORKS:
            network_slugs = [slugs[n] for n in SUPPORTED_NETWORKS if n in slugs]
        else:
            network_slugs = [slugs.get(self.network, DEFAULT_NETWORK_SLUGS[self.network])]
        slug_to_network = {slug: network for network, slug in slugs.items()}

        pages = self.deep_scan_pages if mode is FetchMode.DEEP_SCAN else self.sprint_pages
        async with self._client() as client:
            outcomes = await asyncio.gather(
                *(
                    self._fetch_partition(client, ",".join(network_slugs), sort_dir, pages, mode)
                    for sort_dir in self.SORT_PARTITIONS
                ),
                return_exceptions=True,
            )

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        result = FetchResult()
        seen: set[str] = set()
        for outcome in outcomes:
            result.partial = result.partial or outcome.partial
            result.rate_limited = result.rate_limited or outcome.rate_limited
            result.errors.extend(outcome.errors)
            for raw in outcome.pairs:
                pair = normalize_spot_pair(raw, slug_to_network=slug_to_network)
                if pair is None or pair.id in seen:
                    continue
                seen.add(pair.id)
                result.entities.append(pair)

        logger.info(
            "CMC DEX %s fetch for %s: %d pairs, partial=%s",
            mode.value,
            self.network,
            len(result.entities),
            result.partial,
        )
        return result

    async def _fetch_partition(
        self,
        client: httpx.AsyncClient,
        network_slugs: str,
        sort_dir: str,
        pages: int,
        mode: FetchMode,
    ) -> _PartitionResult:
        partition = _PartitionResult()
        scroll_id: Optional[str] = None

        for index in range(pages):
            params: Dict[str, Any] = {
                "limit": self.page_limit,
                "sort": "percent_change_24h",
                "sort_dir": sort_dir,
                "network_slug": network_slugs,
                "liquidity_min": int(self.min_liquidity),
            }
            if scroll_id:
                params["scroll_id"] = scroll_id

            label = f"{sort_dir} page {index + 1}"
            try:
                body = await self._request_json(
                    client,
                    f"{self.base_url}/v4/dex/spot-pairs/latest",
                    params=params,
                    label=label,
                )
            except UpstreamRateLimited as exc:
                partition.partial = True
                partition.rate_limited = True
                partition.errors.append(exc.message)
                break
            except UpstreamUnavailable as exc:
                if index == 0 and mode is FetchMode.SPRINT:
                    raise
                # Without the scroll cursor the remaining pages are unreachable
                partition.partial = True
                partition.errors.append(exc.message)
                break

            pairs = body.get("data") if isinstance(body, dict) else None
            if not pairs:
                break
            partition.pairs.extend(p for p in pairs if isinstance(p, dict))

            status = body.get("status") if isinstance(body.get("status"), dict) else {}
            scroll_id = status.get("scroll_id") or body.get("scroll_id")
            if not scroll_id:
                break

        return partition

    def accepts(self, entity: RankedEntity) -> bool:
        liquidity = getattr(entity, "liquidity", None) or 0.0
        if liquidity < self.min_liquidity:
            return False
        # Large valuation on a thin pool is usually a fake market cap
        market_cap = getattr(entity, "fully_diluted_value", None) or 0.0
        if market_cap > self.fake_mc_threshold and liquidity < self.fake_mc_min_liquidity:
            return False
        return True

    async def enrich(self, ranked: RankedLists) -> RankedLists:
        candidates = ranked.unique()[: self.metadata_limit]
        asset_ids = sorted({p.asset_id for p in candidates if getattr(p, "asset_id", None)})
        logos = await self._fetch_logos(asset_ids) if asset_ids else {}

        def with_logo(pair: DexPair) -> DexPair:
            return pair.model_copy(
                update={"image": logos.get(pair.asset_id) or pair.image or self.placeholder_image}
            )

        return RankedLists(
            gainers=[with_logo(p) for p in ranked.gainers],
            losers=[with_logo(p) for p in ranked.losers],
        )

    async def _fetch_logos(self, asset_ids: List[int]) -> Dict[int, str]:
        """Best effort; an empty map means placeholders everywhere."""
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/v2/cryptocurrency/info",
                    params={"id": ",".join(str(i) for i in asset_ids)},
                )
                if not response.is_success:
                    logger.warning("CMC metadata request failed: HTTP %s", response.status_code)
                    return {}
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("CMC metadata request failed: %s", exc)
            return {}

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return {}

        logos: Dict[int, str] = {}
        for info in data.values():
            # v2 keys may map to a list of matches for the same id
            entries = info if isinstance(info, list) else [info]
            for entry in entries:
                if isinstance(entry, dict) and entry.get("id") and entry.get("logo"):
                    logos[int(entry["id"])] = entry["logo"]
        return logos

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "unavailable", "reason": "Missing CMC key"}
        return {"status": "healthy"}
