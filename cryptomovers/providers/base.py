import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..core.errors import ConfigurationError, UpstreamRateLimited, UpstreamUnavailable
from ..core.ranking import RankedLists
from ..core.refresh.policy import FetchMode, RefreshPolicy
from ..types.market import RankedEntity

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Entities gathered by one fetch plus completeness flags."""

    entities: List[RankedEntity] = field(default_factory=list)
    partial: bool = False
    rate_limited: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def failure_reason(self) -> str:
        if self.errors:
            return self.errors[-1]
        return "Upstream returned no data"


class MarketDataSource(ABC):
    """One upstream feed the refresh engine can keep cached.

    A source names its cache and lock keys, its timing policy and its
    ranking rules, and knows how to fetch and normalize upstream data.
    """

    name: str
    kind: str
    network: Optional[str] = None
    timeout_s: float = 15
    change_field: str = "change_24h"
    top_n: int = 50
    split_by_sign: bool = False
    max_attempts: int = 2
    retry_delay_s: float = 2.0

    def __init__(
        self,
        *,
        policy: RefreshPolicy,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.policy = policy
        self._transport = transport

    @property
    @abstractmethod
    def cache_key(self) -> str:
        """KV key of the cached payload"""

    @property
    @abstractmethod
    def lock_key(self) -> str:
        """KV key of the refresh lock marker"""

    @abstractmethod
    async def fetch(self, mode: FetchMode) -> FetchResult:
        """Fetch and normalize upstream entities"""

    def ensure_configured(self) -> None:
        """Raise ConfigurationError when a required credential is missing"""

    async def ready(self) -> bool:
        try:
            self.ensure_configured()
        except ConfigurationError:
            return False
        return True

    def accepts(self, entity: RankedEntity) -> bool:
        """Source specific quality filter applied after exclusions"""
        return True

    async def enrich(self, ranked: RankedLists) -> RankedLists:
        """Side-load secondary metadata for ranked entities"""
        return ranked

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy" if await self.ready() else "unavailable"}

    def _build_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_s,
            headers=self._build_headers(),
            transport=self._transport,
        )

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        label: str = "page",
    ) -> Any:
        """GET url with bounded retries.

        A 429 on the first attempt raises UpstreamRateLimited right away.
        Anything else is retried with linear backoff and raises
        UpstreamUnavailable once attempts are exhausted.
        """
        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.get(url, params=params)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code == 429 and attempt == 1:
                    raise UpstreamRateLimited(f"{self.name} rate limited on {label}", provider=self.name)
                if response.is_success:
                    try:
                        return response.json()
                    except ValueError:
                        last_error = "malformed JSON"
                else:
                    last_error = f"HTTP {response.status_code}: {self._error_message(response)}"

            logger.warning("%s %s attempt %d/%d failed: %s", self.name, label, attempt, self.max_attempts, last_error)
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay_s * attempt)

        raise UpstreamUnavailable(f"{self.name} {label} failed: {last_error}", provider=self.name)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            status = body.get("status")
            if isinstance(status, dict) and status.get("error_message"):
                return str(status["error_message"])
            if body.get("error"):
                return str(body["error"])
        return response.text[:200]
