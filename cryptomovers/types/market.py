from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..core.errors import MalformedCache


class RankedEntity(BaseModel):
    """Snapshot of one market instrument. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Upstream identifier")
    symbol: str = Field(description="Display ticker")
    name: Optional[str] = Field(default=None, description="Display name")
    image: Optional[str] = Field(default=None, description="Logo URL")
    price: Optional[float] = Field(default=None, description="Price in USD")
    volume_24h: Optional[float] = Field(default=None, description="24h traded volume in USD")
    change_24h: Optional[float] = Field(default=None, description="24h price change percentage")

    def public_fields(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class CexCoin(RankedEntity):
    """Coin listed by a centralized-exchange aggregator."""

    market_cap: Optional[float] = Field(default=None, description="Circulating market cap in USD")
    change_7d: Optional[float] = Field(default=None)
    change_30d: Optional[float] = Field(default=None)
    change_1y: Optional[float] = Field(default=None)


class DexPair(RankedEntity):
    """Spot pair traded on a decentralized exchange."""

    liquidity: Optional[float] = Field(default=None, description="Pool liquidity in USD")
    fully_diluted_value: Optional[float] = Field(default=None, description="FDV (or market cap) of the base asset")
    contract: Optional[str] = Field(default=None, description="Base asset contract address")
    platform: str = Field(default="Unknown", description="Chain display name")
    network: Optional[str] = Field(default=None, description="Canonical network id")
    dex_url: Optional[str] = Field(default=None)
    asset_id: Optional[int] = Field(default=None, exclude=True, description="Base asset id for metadata lookups")


class CachedPayload(BaseModel):
    """Materialized result stored under one cache key."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: int = Field(description="Epoch ms the payload was produced")
    last_update_attempt: int = Field(default=0, description="Epoch ms the latest refresh attempt started")
    last_update_failed: bool = Field(default=False)
    last_error: Optional[str] = Field(default=None)
    total_scanned: int = Field(default=0, description="Entities returned by upstream")
    excluded_count: int = Field(default=0, description="Entities dropped by deny-lists or quality filters")
    is_partial: bool = Field(default=False, description="Some pages or partitions were abandoned")
    source: str = Field(default="cex")
    network: Optional[str] = Field(default=None)
    gainers: List[Dict[str, Any]] = Field(default_factory=list)
    losers: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def parse(cls, raw: str) -> "CachedPayload":
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, ValueError) as exc:
            raise MalformedCache(f"Stored payload is not valid: {exc}") from exc

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def as_failed_attempt(self, *, attempted_at: int, reason: str) -> "CachedPayload":
        """Keep the data and production time, record a failed refresh attempt."""
        return self.model_copy(
            update={
                "last_update_attempt": attempted_at,
                "last_update_failed": True,
                "last_error": reason,
            }
        )
