from pathlib import Path
from typing import List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Key-value store
    kv_url: str = Field(
        default="memory://",
        description="KV binding: 'memory://' for the in-process store or a redis:// URL. Empty means unbound.",
        validation_alias=AliasChoices("kv_url", "KV_STORE_URL", "redis_url"),
    )
    memory_kv_max_size: int = Field(default=1000, description="Maximum entries held by the in-memory store")

    # External API Keys
    coingecko_api_key: str = Field(default="", description="Coingecko demo API key (optional)")
    cmc_pro_api_key: str = Field(
        default="",
        description="CoinMarketCap Pro API key, required for DEX data",
        validation_alias=AliasChoices("cmc_pro_api_key", "CMC_PRO_API_KEY", "cmc_api_key"),
    )

    # Upstream endpoints
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    cmc_base_url: str = Field(default="https://pro-api.coinmarketcap.com")
    request_timeout_seconds: float = Field(default=15.0, description="Per-request upstream timeout")

    # CEX refresh timers
    cex_soft_refresh_seconds: int = Field(default=12 * 60, description="Age after which CEX data is refreshed")
    cex_retry_delay_seconds: int = Field(default=2 * 60, description="Minimum delay between CEX refresh attempts")
    cex_top_n: int = Field(default=50, ge=1, description="Gainers/losers kept for the CEX payload")
    cex_per_page: int = Field(default=250, ge=1, le=250)
    cex_sprint_pages: int = Field(default=1, ge=1)
    cex_deep_scan_pages: int = Field(default=6, ge=1)
    cex_page_delay_seconds: float = Field(default=2.0, ge=0, description="Pause between deep-scan pages")

    # DEX refresh timers
    dex_soft_refresh_seconds: int = Field(default=18 * 60, description="Age after which DEX data is refreshed")
    dex_retry_delay_seconds: int = Field(default=2 * 60, description="Minimum delay between DEX refresh attempts")
    dex_top_n: int = Field(default=20, ge=1, description="Gainers/losers kept per DEX network")
    dex_page_limit: int = Field(default=100, ge=1, le=100)
    dex_sprint_pages: int = Field(default=1, ge=1)
    dex_deep_scan_pages: int = Field(default=3, ge=1)
    dex_min_liquidity_usd: float = Field(default=20_000.0, ge=0)
    dex_fake_mc_threshold_usd: float = Field(default=3_000_000.0, description="Market cap above which thin liquidity is suspicious")
    dex_fake_mc_min_liquidity_usd: float = Field(default=150_000.0)
    dex_metadata_limit: int = Field(default=100, ge=0, description="Max pairs that get logos side-loaded")
    dex_networks_cache_ttl_seconds: int = Field(default=86_400)

    # Shared refresh policy
    lock_timeout_seconds: int = Field(default=120, description="Age after which a lock marker is ignored")
    lock_ttl_seconds: int = Field(default=120, description="KV TTL of the lock marker")
    payload_ttl_seconds: int = Field(default=172_800, description="KV TTL of a fresh payload")
    fallback_ttl_seconds: int = Field(default=300, description="KV TTL of a failed-attempt payload")
    blocking_fetch_timeout_seconds: float = Field(default=45.0, description="Wall clock budget for a cold fetch")
    background_refresh_timeout_seconds: float = Field(default=300.0)
    cold_start_poll_seconds: float = Field(default=0.5, gt=0)
    upstream_max_attempts: int = Field(default=2, ge=1)
    upstream_retry_delay_seconds: float = Field(default=2.0, ge=0)
    scheduler_drain_timeout_seconds: float = Field(default=30.0, ge=0)

    # Static assets
    static_dir: Path = Field(default=BASE_DIR / "public", description="Directory served for unknown paths")
    assets_base_url: str = Field(default="", description="Read exclusion lists over HTTP from this origin instead of static_dir")
    exclusion_files: List[str] = Field(
        default_factory=lambda: [
            "/exclusions/stablecoins-exclusion-list.json",
            "/exclusions/wrapped-tokens-exclusion-list.json",
            "/exclusions/rewards-tokens-exclusion-list.json",
        ],
    )
    placeholder_image_url: str = Field(default="https://cryptomovers.pages.dev/images/generic-coin.png")

    # Image proxy
    image_proxy_ttl_seconds: int = Field(default=7 * 86_400)
    image_proxy_max_bytes: int = Field(default=2_000_000)

    @property
    def has_kv_binding(self) -> bool:
        return bool(self.kv_url.strip())

    @property
    def has_cmc_key(self) -> bool:
        return bool(self.cmc_pro_api_key)

    @property
    def has_coingecko_key(self) -> bool:
        return bool(self.coingecko_api_key)


# Global settings instance
settings = Settings()
