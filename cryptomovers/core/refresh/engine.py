"""Cache freshness / refresh state machine.

On every request the engine reads the cached payload and the lock marker for
a data source and picks one branch (first match wins):

1. payload younger than the soft refresh threshold  -> serve it (Cache-Fresh)
2. a refresh holds the lock and a payload exists     -> serve it (Cache-UpdateInProgress)
3. payload stale but the last attempt is too recent  -> serve it (Cache-RateLimited)
4. payload stale, retry delay elapsed                -> lock, refresh in background,
                                                        serve it (Cache-Proactive)
5. no payload                                        -> lock, blocking fetch (Live-Fetch)

The lock is advisory: a KV key holding the start time of a refresh, expired
by TTL. Stores with an atomic conditional write narrow the window in which
two refreshes for the same key can start; without one the race is tolerated
since every refresh writes a complete payload.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from ...types.market import CachedPayload
from ..errors import MalformedCache, RefreshTimeout, UpstreamError, UpstreamRateLimited, UpstreamUnavailable
from ..ranking import project, rank_entities
from .policy import FetchMode, RefreshPolicy, SourceTag
from .scheduler import BackgroundScheduler

if TYPE_CHECKING:
    from ...providers.base import FetchResult, MarketDataSource
    from ...services.exclusions import ExclusionFilter
    from ...services.kv_store import KVStore

logger = structlog.stdlib.get_logger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


class Action(str, Enum):
    SERVE_FRESH = "serve_fresh"
    SERVE_UPDATING = "serve_updating"
    SERVE_RATE_LIMITED = "serve_rate_limited"
    REFRESH_IN_BACKGROUND = "refresh_in_background"
    FETCH_BLOCKING = "fetch_blocking"


_CACHED_TAGS = {
    Action.SERVE_FRESH: SourceTag.FRESH,
    Action.SERVE_UPDATING: SourceTag.UPDATE_IN_PROGRESS,
    Action.SERVE_RATE_LIMITED: SourceTag.RATE_LIMITED,
}


@dataclass(frozen=True)
class CacheSnapshot:
    """What the KV store held for one source at instant `now`."""

    now: int
    raw: Optional[str] = None
    payload: Optional[CachedPayload] = None
    lock_raw: Optional[str] = None

    @property
    def age(self) -> float:
        if self.payload is None:
            return math.inf
        return self.now - self.payload.timestamp

    @property
    def lock_marker(self) -> Optional[int]:
        if self.lock_raw is None:
            return None
        try:
            return int(self.lock_raw)
        except ValueError:
            return None

    def lock_held(self, policy: RefreshPolicy) -> bool:
        marker = self.lock_marker
        return marker is not None and (self.now - marker) < policy.lock_timeout_ms


@dataclass(frozen=True)
class ServeResult:
    body: str
    source: SourceTag
    payload: CachedPayload


def decide(snapshot: CacheSnapshot, policy: RefreshPolicy) -> Action:
    """Evaluate the decision table for one snapshot."""
    cached = snapshot.payload
    if cached is None:
        return Action.FETCH_BLOCKING
    if snapshot.age < policy.soft_refresh_ms:
        return Action.SERVE_FRESH
    if snapshot.lock_held(policy):
        return Action.SERVE_UPDATING
    if snapshot.now - cached.last_update_attempt < policy.min_retry_delay_ms:
        return Action.SERVE_RATE_LIMITED
    return Action.REFRESH_IN_BACKGROUND


class RefreshEngine:
    """Serves cached market data and keeps it fresh."""

    def __init__(
        self,
        *,
        kv: KVStore,
        exclusions: ExclusionFilter,
        scheduler: BackgroundScheduler,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._kv = kv
        self._exclusions = exclusions
        self._scheduler = scheduler
        self._clock = clock or epoch_ms

    # ---------------------------
    # Request path
    # ---------------------------
    async def serve(self, source: MarketDataSource) -> ServeResult:
        snapshot = await self.read_snapshot(source)
        action = decide(snapshot, source.policy)
        logger.info(
            "cache_decision",
            cache_key=source.cache_key,
            action=action.value,
            age_ms=None if snapshot.payload is None else snapshot.age,
        )

        if action is Action.FETCH_BLOCKING:
            return await self._serve_cold(source, snapshot)

        try:
            if action is Action.REFRESH_IN_BACKGROUND:
                if not await self._acquire_lock(source, snapshot):
                    return self._cached(snapshot, SourceTag.UPDATE_IN_PROGRESS)
                try:
                    self._schedule_refresh(source, snapshot.payload)
                except Exception:
                    await self._release_lock(source)
                    raise
                return self._cached(snapshot, SourceTag.PROACTIVE)
            return self._cached(snapshot, _CACHED_TAGS[action])
        except Exception as exc:  # noqa: BLE001
            # Stale data beats an error page
            logger.warning(
                "cache_fallback_error",
                cache_key=source.cache_key,
                error=str(exc),
                exc_info=True,
            )
            return self._cached(snapshot, SourceTag.FALLBACK_ERROR)

    async def read_snapshot(self, source: MarketDataSource) -> CacheSnapshot:
        raw, lock_raw = await asyncio.gather(
            self._kv.get(source.cache_key),
            self._kv.get(source.lock_key),
        )
        payload = None
        if raw:
            try:
                payload = CachedPayload.parse(raw)
            except MalformedCache as exc:
                logger.warning("cache_malformed", cache_key=source.cache_key, error=exc.message)
                raw = None
        return CacheSnapshot(now=self._clock(), raw=raw, payload=payload, lock_raw=lock_raw)

    @staticmethod
    def _cached(snapshot: CacheSnapshot, tag: SourceTag) -> ServeResult:
        return ServeResult(body=snapshot.raw, source=tag, payload=snapshot.payload)

    async def _serve_cold(self, source: MarketDataSource, snapshot: CacheSnapshot) -> ServeResult:
        policy = source.policy
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.blocking_timeout_seconds

        # Another request may already be fetching; wait for its payload
        while snapshot.lock_held(policy) or not await self._acquire_lock(source, snapshot):
            if loop.time() >= deadline:
                raise RefreshTimeout()
            await asyncio.sleep(policy.cold_start_poll_seconds)
            snapshot = await self.read_snapshot(source)
            if snapshot.payload is not None:
                return self._cached(snapshot, SourceTag.UPDATE_IN_PROGRESS)

        remaining = max(deadline - loop.time(), 0.0)
        try:
            payload = await asyncio.wait_for(
                self.refresh(source, mode=FetchMode.SPRINT, prior=None),
                timeout=remaining,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("blocking_fetch_timeout", cache_key=source.cache_key, timeout_s=remaining)
            raise RefreshTimeout(provider=source.name) from exc
        finally:
            await self._release_lock(source)

        return ServeResult(body=payload.to_json(), source=SourceTag.LIVE_FETCH, payload=payload)

    # ---------------------------
    # Locking
    # ---------------------------
    async def _acquire_lock(self, source: MarketDataSource, snapshot: CacheSnapshot) -> bool:
        """Write the lock marker. False means another refresh owns it."""
        if snapshot.lock_raw is not None and not snapshot.lock_held(source.policy):
            # Expired or unreadable marker still inside its TTL
            await self._kv.delete(source.lock_key)
        acquired = await self._kv.put_if_absent(
            source.lock_key,
            str(self._clock()),
            ttl_seconds=source.policy.lock_ttl_seconds,
        )
        if not acquired:
            logger.info("lock_contended", lock_key=source.lock_key)
        return acquired

    async def _release_lock(self, source: MarketDataSource) -> None:
        try:
            await self._kv.delete(source.lock_key)
        except Exception as exc:  # noqa: BLE001
            # The marker's TTL releases it eventually
            logger.warning("lock_release_failed", lock_key=source.lock_key, error=str(exc))

    # ---------------------------
    # Background path
    # ---------------------------
    def _schedule_refresh(self, source: MarketDataSource, prior: Optional[CachedPayload]) -> None:
        self._scheduler.schedule(
            self._background_refresh(source, prior),
            name=f"refresh:{source.cache_key}",
            timeout=source.policy.background_timeout_seconds,
        )

    async def _background_refresh(self, source: MarketDataSource, prior: Optional[CachedPayload]) -> None:
        try:
            await self.refresh(source, mode=FetchMode.DEEP_SCAN, prior=prior)
        except Exception as exc:  # noqa: BLE001
            logger.warning("background_refresh_failed", cache_key=source.cache_key, error=str(exc))
        finally:
            await self._release_lock(source)

    # ---------------------------
    # Refresh procedure
    # ---------------------------
    async def refresh(
        self,
        source: MarketDataSource,
        *,
        mode: FetchMode,
        prior: Optional[CachedPayload] = None,
    ) -> CachedPayload:
        """Fetch, filter, rank and persist one payload.

        Does not touch the lock; callers release it.
        """
        started = self._clock()
        exclusion_set = await self._exclusions.load()

        try:
            result = await source.fetch(mode)
        except UpstreamError as exc:
            result = _failed_fetch(exc)

        if not result.entities:
            reason = result.failure_reason
            if prior is not None:
                fallback = prior.as_failed_attempt(attempted_at=started, reason=reason)
                await self._kv.put(
                    source.cache_key,
                    fallback.to_json(),
                    ttl_seconds=source.policy.fallback_ttl_seconds,
                )
                logger.warning("refresh_fallback_written", cache_key=source.cache_key, reason=reason)
                return fallback
            if result.rate_limited:
                raise UpstreamRateLimited(reason, provider=source.name)
            raise UpstreamUnavailable(reason, provider=source.name)

        kept = [
            entity
            for entity in result.entities
            if entity.symbol.lower() not in exclusion_set and source.accepts(entity)
        ]
        ranked = rank_entities(
            kept,
            change_field=source.change_field,
            limit=source.top_n,
            split_by_sign=source.split_by_sign,
        )
        ranked = await source.enrich(ranked)

        payload = CachedPayload(
            timestamp=self._clock(),
            last_update_attempt=started,
            last_update_failed=False,
            total_scanned=len(result.entities),
            excluded_count=len(result.entities) - len(kept),
            is_partial=result.partial,
            source=source.kind,
            network=source.network,
            gainers=project(ranked.gainers),
            losers=project(ranked.losers),
        )
        await self._kv.put(source.cache_key, payload.to_json(), ttl_seconds=source.policy.payload_ttl_seconds)
        logger.info(
            "refresh_completed",
            cache_key=source.cache_key,
            mode=mode.value,
            scanned=payload.total_scanned,
            excluded=payload.excluded_count,
            partial=payload.is_partial,
        )
        return payload


def _failed_fetch(exc: UpstreamError) -> FetchResult:
    from ...providers.base import FetchResult

    return FetchResult(
        partial=True,
        rate_limited=isinstance(exc, UpstreamRateLimited),
        errors=[exc.message],
    )
