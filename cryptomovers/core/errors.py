"""
Error Classification

Failure types raised while serving market data. Each error carries a
category (used as the `reason` of an error response) and an optional
retry hint for clients.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Categories of failures surfaced to clients."""

    RATE_LIMIT = "rate_limited"                  # Upstream returned 429
    UPSTREAM = "upstream_unavailable"            # Non-2xx / network failure after retries
    TIMEOUT = "timeout"                          # Blocking fetch exceeded its budget
    MALFORMED_CACHE = "malformed_cache"          # Stored payload did not parse
    CONFIGURATION = "configuration"              # Missing binding or credential
    STORE = "store_unavailable"                  # KV store call failed
    UNKNOWN = "internal"


class MarketDataError(Exception):
    """Base class for failures while producing market data."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retry_after: Optional[float] = None

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retry_after = retry_after if retry_after is not None else self.default_retry_after


class UpstreamError(MarketDataError):
    """An upstream market-data API could not produce data."""

    category = ErrorCategory.UPSTREAM
    default_retry_after = 30.0


class UpstreamRateLimited(UpstreamError):
    """Upstream answered 429; not retried within the same cycle."""

    category = ErrorCategory.RATE_LIMIT
    default_retry_after = 60.0

    def __init__(self, message: str = "Upstream rate limit reached", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamUnavailable(UpstreamError):
    """Non-2xx or transport failure after retries were exhausted."""


class RefreshTimeout(MarketDataError):
    """Blocking fetch exceeded its wall-clock budget."""

    category = ErrorCategory.TIMEOUT
    default_retry_after = 5.0

    def __init__(self, message: str = "Request timeout. Try again.", **kwargs):
        super().__init__(message, **kwargs)


class MalformedCache(MarketDataError):
    """A stored payload failed to parse. Treated as a cache miss."""

    category = ErrorCategory.MALFORMED_CACHE


class ConfigurationError(MarketDataError):
    """A required binding or credential is missing; needs an operator."""

    category = ErrorCategory.CONFIGURATION


class StoreError(MarketDataError):
    """The key-value store rejected or failed a call."""

    category = ErrorCategory.STORE
    default_retry_after = 10.0
