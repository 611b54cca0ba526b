"""
Tests for the cache freshness / refresh state machine.
"""

import asyncio
import json
from dataclasses import replace

import pytest

from conftest import MINUTE_MS, FakeSource, coin, stored_payload
from cryptomovers.core.errors import RefreshTimeout, StoreError, UpstreamRateLimited, UpstreamUnavailable
from cryptomovers.core.refresh import (
    Action,
    CacheSnapshot,
    FetchMode,
    RefreshEngine,
    SourceTag,
    decide,
)
from cryptomovers.providers.base import FetchResult
from cryptomovers.services.kv_store import MemoryKVStore
from cryptomovers.types.market import CachedPayload


def make_engine(kv, exclusions, scheduler, clock):
    return RefreshEngine(kv=kv, exclusions=exclusions, scheduler=scheduler, clock=clock)


async def seed(kv, payload: CachedPayload, *, raw: str = None) -> str:
    body = raw or payload.to_json()
    await kv.put("test_data", body, ttl_seconds=3600)
    return body


# =============================================================================
# Decision table
# =============================================================================

class TestDecide:

    def test_missing_payload_fetches_blocking(self, clock, policy):
        assert decide(CacheSnapshot(now=clock()), policy) is Action.FETCH_BLOCKING

    def test_young_payload_is_fresh(self, clock, policy):
        payload = stored_payload(clock() - 5 * MINUTE_MS)
        assert decide(CacheSnapshot(now=clock(), raw="{}", payload=payload), policy) is Action.SERVE_FRESH

    def test_fresh_wins_over_held_lock(self, clock, policy):
        payload = stored_payload(clock() - 5 * MINUTE_MS)
        snapshot = CacheSnapshot(now=clock(), raw="{}", payload=payload, lock_raw=str(clock()))
        assert decide(snapshot, policy) is Action.SERVE_FRESH

    def test_stale_payload_with_held_lock_is_updating(self, clock, policy):
        payload = stored_payload(clock() - 20 * MINUTE_MS)
        snapshot = CacheSnapshot(now=clock(), raw="{}", payload=payload, lock_raw=str(clock() - 30_000))
        assert decide(snapshot, policy) is Action.SERVE_UPDATING

    def test_recent_attempt_is_rate_limited(self, clock, policy):
        payload = stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - MINUTE_MS)
        assert decide(CacheSnapshot(now=clock(), raw="{}", payload=payload), policy) is Action.SERVE_RATE_LIMITED

    def test_attempt_eleven_minutes_ago_refreshes(self, clock, policy):
        payload = stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - 11 * MINUTE_MS)
        assert decide(CacheSnapshot(now=clock(), raw="{}", payload=payload), policy) is Action.REFRESH_IN_BACKGROUND

    def test_expired_lock_marker_is_not_held(self, clock, policy):
        payload = stored_payload(clock() - 20 * MINUTE_MS)
        snapshot = CacheSnapshot(now=clock(), raw="{}", payload=payload, lock_raw=str(clock() - 130_000))
        assert snapshot.lock_held(policy) is False
        assert decide(snapshot, policy) is Action.REFRESH_IN_BACKGROUND

    def test_unparseable_lock_marker_is_not_held(self, clock, policy):
        snapshot = CacheSnapshot(now=clock(), lock_raw="not-a-number")
        assert snapshot.lock_held(policy) is False


# =============================================================================
# Serving cached data
# =============================================================================

class TestServeCached:

    @pytest.mark.asyncio
    async def test_fresh_payload_served_verbatim_without_upstream_call(self, kv, exclusions, scheduler, clock, policy):
        payload = stored_payload(clock() - 5 * MINUTE_MS)
        # Non-canonical formatting proves the stored string is passed through untouched
        raw = json.dumps(json.loads(payload.to_json()), indent=2)
        await seed(kv, payload, raw=raw)
        source = FakeSource(policy)

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.FRESH
        assert result.body == raw
        assert source.modes == []

    @pytest.mark.asyncio
    async def test_recent_failed_attempt_serves_rate_limited(self, kv, exclusions, scheduler, clock, policy):
        payload = stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - MINUTE_MS)
        body = await seed(kv, payload)
        source = FakeSource(policy)

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.RATE_LIMITED
        assert result.body == body
        assert source.modes == []
        assert await kv.get("test_lock") is None

    @pytest.mark.asyncio
    async def test_held_lock_serves_update_in_progress(self, kv, exclusions, scheduler, clock, policy):
        body = await seed(kv, stored_payload(clock() - 20 * MINUTE_MS))
        await kv.put("test_lock", str(clock() - 10_000), ttl_seconds=120)
        source = FakeSource(policy)

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.UPDATE_IN_PROGRESS
        assert result.body == body
        assert scheduler.inflight == 0


# =============================================================================
# Background refresh
# =============================================================================

class TestProactiveRefresh:

    @pytest.mark.asyncio
    async def test_stale_payload_schedules_deep_scan(self, kv, exclusions, scheduler, clock, policy):
        old_body = await seed(kv, stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - 11 * MINUTE_MS))
        source = FakeSource(policy, [FetchResult(entities=[coin("AAA", 12.0), coin("BBB", -4.0)])])
        engine = make_engine(kv, exclusions, scheduler, clock)

        result = await engine.serve(source)

        assert result.source is SourceTag.PROACTIVE
        assert result.body == old_body
        assert await kv.get("test_lock") == str(clock())

        await scheduler.wait_idle()

        assert source.modes == [FetchMode.DEEP_SCAN]
        refreshed = CachedPayload.parse(await kv.get("test_data"))
        assert refreshed.timestamp == clock()
        assert refreshed.last_update_failed is False
        assert [g["symbol"] for g in refreshed.gainers] == ["AAA", "BBB"]
        assert await kv.get("test_lock") is None

    @pytest.mark.asyncio
    async def test_background_failure_writes_fallback(self, kv, exclusions, scheduler, clock, policy):
        prior = stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - 11 * MINUTE_MS)
        await seed(kv, prior)
        source = FakeSource(policy, [UpstreamRateLimited("coingecko rate limited on page 1")])
        engine = make_engine(kv, exclusions, scheduler, clock)

        result = await engine.serve(source)
        await scheduler.wait_idle()

        assert result.source is SourceTag.PROACTIVE
        fallback = CachedPayload.parse(await kv.get("test_data"))
        assert fallback.timestamp == prior.timestamp
        assert fallback.gainers == prior.gainers
        assert fallback.last_update_attempt == clock()
        assert fallback.last_update_failed is True
        assert fallback.last_error == "coingecko rate limited on page 1"
        assert await kv.get("test_lock") is None

        # The failed attempt now throttles further refreshes
        again = await engine.serve(source)
        assert again.source is SourceTag.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_lost_conditional_write_serves_update_in_progress(self, exclusions, scheduler, clock, policy):
        class ContendedStore(MemoryKVStore):
            async def put_if_absent(self, key, value, *, ttl_seconds):
                return False

        kv = ContendedStore()
        body = await seed(kv, stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - 11 * MINUTE_MS))

        result = await make_engine(kv, exclusions, scheduler, clock).serve(FakeSource(policy))

        assert result.source is SourceTag.UPDATE_IN_PROGRESS
        assert result.body == body
        assert scheduler.inflight == 0

    @pytest.mark.asyncio
    async def test_scheduling_failure_serves_fallback_error(self, kv, exclusions, scheduler, clock, policy):
        body = await seed(kv, stored_payload(clock() - 15 * MINUTE_MS, last_update_attempt=clock() - 11 * MINUTE_MS))
        await scheduler.drain()

        result = await make_engine(kv, exclusions, scheduler, clock).serve(FakeSource(policy))

        assert result.source is SourceTag.FALLBACK_ERROR
        assert result.body == body
        assert await kv.get("test_lock") is None


# =============================================================================
# Cold start
# =============================================================================

class TestLiveFetch:

    @pytest.mark.asyncio
    async def test_empty_cache_fetches_sprint(self, kv, exclusions, scheduler, clock, policy):
        source = FakeSource(
            policy,
            [FetchResult(entities=[coin("AAA", 3.0), coin("USDT", 0.1), coin("ZZZ", -8.0)], partial=True)],
        )

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.LIVE_FETCH
        assert source.modes == [FetchMode.SPRINT]
        body = json.loads(result.body)
        assert body["totalScanned"] == 3
        assert body["excludedCount"] == 1
        assert body["isPartial"] is True
        assert [g["symbol"] for g in body["gainers"]] == ["AAA", "ZZZ"]
        assert [l["symbol"] for l in body["losers"]] == ["ZZZ", "AAA"]
        assert await kv.get("test_data") == result.body
        assert await kv.get("test_lock") is None

    @pytest.mark.asyncio
    async def test_malformed_payload_is_treated_as_missing(self, kv, exclusions, scheduler, clock, policy):
        await kv.put("test_data", "{not json", ttl_seconds=60)
        source = FakeSource(policy, [FetchResult(entities=[coin("AAA", 3.0)])])

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.LIVE_FETCH

    @pytest.mark.asyncio
    async def test_upstream_failure_without_cache_raises(self, kv, exclusions, scheduler, clock, policy):
        source = FakeSource(policy, [UpstreamUnavailable("coingecko page 1 failed: HTTP 503")])

        with pytest.raises(UpstreamUnavailable):
            await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert await kv.get("test_data") is None
        assert await kv.get("test_lock") is None

    @pytest.mark.asyncio
    async def test_rate_limited_empty_fetch_raises_rate_limited(self, kv, exclusions, scheduler, clock, policy):
        source = FakeSource(policy, [FetchResult(partial=True, rate_limited=True, errors=["throttled"])])

        with pytest.raises(UpstreamRateLimited) as excinfo:
            await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert excinfo.value.retry_after == 60
        assert await kv.get("test_data") is None

    @pytest.mark.asyncio
    async def test_blocking_fetch_times_out(self, kv, exclusions, scheduler, clock, policy):
        slow = FakeSource(replace(policy, blocking_timeout_seconds=0.05), [FetchResult(entities=[coin("A", 1.0)])], delay=1)

        with pytest.raises(RefreshTimeout) as excinfo:
            await make_engine(kv, exclusions, scheduler, clock).serve(slow)

        assert excinfo.value.message == "Request timeout. Try again."
        assert await kv.get("test_lock") is None
        assert await kv.get("test_data") is None

    @pytest.mark.asyncio
    async def test_concurrent_cold_requests_share_one_fetch(self, kv, exclusions, scheduler, clock, policy):
        source = FakeSource(policy, [FetchResult(entities=[coin("AAA", 3.0)])], delay=0.05)
        engine = make_engine(kv, exclusions, scheduler, clock)

        first, second = await asyncio.gather(engine.serve(source), engine.serve(source))

        assert source.modes == [FetchMode.SPRINT]
        assert {first.source, second.source} == {SourceTag.LIVE_FETCH, SourceTag.UPDATE_IN_PROGRESS}
        assert first.payload.timestamp == second.payload.timestamp

    @pytest.mark.asyncio
    async def test_lock_release_failure_is_tolerated(self, exclusions, scheduler, clock, policy):
        class StickyStore(MemoryKVStore):
            async def delete(self, key):
                raise StoreError("delete refused")

        kv = StickyStore()
        source = FakeSource(policy, [FetchResult(entities=[coin("AAA", 3.0)])])

        result = await make_engine(kv, exclusions, scheduler, clock).serve(source)

        assert result.source is SourceTag.LIVE_FETCH
        assert await kv.get("test_lock") == str(clock())
