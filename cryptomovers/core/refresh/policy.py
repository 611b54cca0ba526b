from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ...config import Settings


class FetchMode(str, Enum):
    """How much of the upstream universe a refresh scans."""

    SPRINT = "sprint"        # first-ever fetch, bounded latency
    DEEP_SCAN = "deep_scan"  # background refresh, more pages


class SourceTag(str, Enum):
    """Value of the X-Source header: which branch served the response."""

    FRESH = "Cache-Fresh"
    UPDATE_IN_PROGRESS = "Cache-UpdateInProgress"
    RATE_LIMITED = "Cache-RateLimited"
    PROACTIVE = "Cache-Proactive"
    LIVE_FETCH = "Live-Fetch"
    FALLBACK_ERROR = "Cache-Fallback-Error"


@dataclass(frozen=True)
class RefreshPolicy:
    """Timing thresholds for one data source. Milliseconds unless named otherwise."""

    soft_refresh_ms: int
    min_retry_delay_ms: int
    lock_timeout_ms: int = 120_000
    lock_ttl_seconds: int = 120
    payload_ttl_seconds: int = 172_800
    fallback_ttl_seconds: int = 300
    blocking_timeout_seconds: float = 45.0
    background_timeout_seconds: float = 300.0
    cold_start_poll_seconds: float = 0.5

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        *,
        soft_refresh_seconds: int,
        retry_delay_seconds: Optional[int] = None,
    ) -> "RefreshPolicy":
        return cls(
            soft_refresh_ms=soft_refresh_seconds * 1000,
            min_retry_delay_ms=(retry_delay_seconds or 0) * 1000,
            lock_timeout_ms=config.lock_timeout_seconds * 1000,
            lock_ttl_seconds=config.lock_ttl_seconds,
            payload_ttl_seconds=config.payload_ttl_seconds,
            fallback_ttl_seconds=config.fallback_ttl_seconds,
            blocking_timeout_seconds=config.blocking_fetch_timeout_seconds,
            background_timeout_seconds=config.background_refresh_timeout_seconds,
            cold_start_poll_seconds=config.cold_start_poll_seconds,
        )
