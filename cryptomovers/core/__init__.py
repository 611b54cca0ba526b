"""Core market-data logic: ranking, refresh state machine and errors."""

from .errors import (
    ConfigurationError,
    ErrorCategory,
    MalformedCache,
    MarketDataError,
    RefreshTimeout,
    StoreError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)

__all__ = [
    "ConfigurationError",
    "ErrorCategory",
    "MalformedCache",
    "MarketDataError",
    "RefreshTimeout",
    "StoreError",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamUnavailable",
]
