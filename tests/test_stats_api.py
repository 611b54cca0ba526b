"""
HTTP surface tests: routing, headers and error mapping.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeClock, InMemoryAssets
from cryptomovers.api.image_proxy import get_image_proxy
from cryptomovers.config import Settings
from cryptomovers.main import app
from cryptomovers.services.image_proxy import ImageProxy
from cryptomovers.services.kv_store import MemoryKVStore
from cryptomovers.services.market_stats import MarketStatsService, get_market_stats_service

STABLECOINS = "/exclusions/stablecoins-exclusion-list.json"


def coingecko_rows():
    return [
        {"id": "pepe", "symbol": "pepe", "name": "Pepe", "current_price": 0.00001, "price_change_percentage_24h": 25.0},
        {"id": "tether", "symbol": "usdt", "name": "Tether", "current_price": 1.0, "price_change_percentage_24h": 0.01},
        {"id": "bitcoin", "symbol": "btc", "name": "Bitcoin", "current_price": 65000, "price_change_percentage_24h": -2.0},
    ]


def dex_pair(pair_id, change, asset_id):
    return {
        "contract_address": pair_id,
        "base_asset_symbol": pair_id.upper(),
        "base_asset_id": str(asset_id),
        "network_slug": "solana",
        "platform": {"name": "Solana"},
        "quote": [{"price": 1.0, "percent_change_24h": change, "liquidity": 500_000}],
    }


class Upstream:
    def __init__(self):
        self.coingecko_status = 200
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path.endswith("/coins/markets"):
            if self.coingecko_status != 200:
                return httpx.Response(self.coingecko_status, json={"error": "upstream down"})
            return httpx.Response(200, json=coingecko_rows())
        if path.endswith("/ping"):
            return httpx.Response(200, json={"gecko_says": "(V3) To the Moon!"})
        if path == "/v4/dex/networks/list":
            return httpx.Response(200, json={"data": [{"name": "Solana", "network_slug": "solana"}]})
        if path == "/v4/dex/spot-pairs/latest":
            if request.url.params["sort_dir"] == "desc":
                return httpx.Response(200, json={"data": [dex_pair("wif", 30.0, 1), dex_pair("flat", 0.0, 2)]})
            return httpx.Response(200, json={"data": [dex_pair("rug", -60.0, 3)]})
        if path == "/v2/cryptocurrency/info":
            return httpx.Response(200, json={"data": {}})
        if path.endswith(".png"):
            return httpx.Response(200, content=b"png-bytes", headers={"content-type": "image/png"})
        return httpx.Response(404)


@pytest.fixture
def upstream():
    return Upstream()


def make_service(upstream, **overrides):
    options = {
        "cmc_pro_api_key": "test-key",
        "upstream_retry_delay_seconds": 0,
        "cex_page_delay_seconds": 0,
    }
    options.update(overrides)
    config = Settings(**options)
    return MarketStatsService(
        config=config,
        kv=MemoryKVStore() if config.has_kv_binding else None,
        assets=InMemoryAssets({STABLECOINS: json.dumps(["USDT"]).encode()}),
        clock=FakeClock(),
        transport=httpx.MockTransport(upstream),
    )


@pytest.fixture
def client_for(upstream):
    def build(service):
        app.dependency_overrides[get_market_stats_service] = lambda: service
        app.dependency_overrides[get_image_proxy] = lambda: ImageProxy(
            service.kv, config=service.config, transport=httpx.MockTransport(upstream)
        )
        return TestClient(app)

    yield build
    app.dependency_overrides.clear()


def assert_no_store(response):
    assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate, proxy-revalidate"
    assert response.headers["pragma"] == "no-cache"
    assert response.headers["expires"] == "0"
    assert response.headers["access-control-allow-origin"] == "*"


def test_cex_stats_live_fetch_then_fresh(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        first = client.get("/api/stats")
        second = client.get("/api/stats")

    assert first.status_code == 200
    assert first.headers["x-source"] == "Live-Fetch"
    assert_no_store(first)
    body = first.json()
    assert body["source"] == "cex"
    assert body["excludedCount"] == 1
    assert [g["symbol"] for g in body["gainers"]] == ["pepe", "btc"]

    assert second.headers["x-source"] == "Cache-Fresh"
    assert second.text == first.text
    assert upstream.calls.count("/api/v3/coins/markets") == 1


def test_network_param_routes_to_dex(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        response = client.get("/api/stats", params={"network": "SOL"})

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "dex"
    assert body["network"] == "solana"
    assert [g["symbol"] for g in body["gainers"]] == ["WIF"]
    assert [l["symbol"] for l in body["losers"]] == ["RUG"]


def test_dex_stats_defaults_to_all_networks(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        response = client.get("/api/dex-stats")
        unknown = client.get("/api/dex-stats", params={"network": "dogechain"})

    assert response.json()["network"] == "all"
    assert unknown.headers["x-source"] == "Cache-Fresh"
    assert unknown.json()["network"] == "all"


def test_missing_cmc_key_is_configuration_error(client_for, upstream):
    with client_for(make_service(upstream, cmc_pro_api_key="")) as client:
        response = client.get("/api/dex-stats", params={"network": "base"})

    assert response.status_code == 500
    assert response.json() == {
        "error": True,
        "message": "Server Config Error: Missing CMC Key",
        "reason": "configuration",
        "retry_after": None,
    }
    assert "retry-after" not in response.headers
    assert_no_store(response)


def test_missing_kv_binding_is_configuration_error(client_for, upstream):
    with client_for(make_service(upstream, kv_url="")) as client:
        response = client.get("/api/stats")

    assert response.status_code == 500
    assert response.json()["message"] == "KV_STORE binding missing"


@pytest.mark.parametrize(
    "status,reason,retry_after",
    [(500, "upstream_unavailable", "30"), (429, "rate_limited", "60")],
)
def test_upstream_failure_without_cache(client_for, upstream, status, reason, retry_after):
    upstream.coingecko_status = status
    with client_for(make_service(upstream)) as client:
        response = client.get("/api/stats")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] is True
    assert body["reason"] == reason
    assert response.headers["retry-after"] == retry_after
    assert "x-source" not in response.headers


def test_image_proxy(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        bad = client.get("/api/image-proxy", params={"url": "file:///etc/passwd"})
        miss = client.get("/api/image-proxy", params={"url": "https://cdn.example/logo.png"})
        hit = client.get("/api/image-proxy", params={"url": "https://cdn.example/logo.png"})
        broken = client.get("/api/image-proxy", params={"url": "https://cdn.example/missing.jpg"})

    assert bad.status_code == 400
    assert miss.status_code == 200
    assert miss.content == b"png-bytes"
    assert miss.headers["content-type"] == "image/png"
    assert miss.headers["cache-control"] == "public, max-age=86400, s-maxage=604800"
    assert miss.headers["x-cache"] == "MISS"
    assert hit.headers["x-cache"] == "HIT"
    assert broken.status_code == 502


def test_healthz_reports_providers_and_kv(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        response = client.get("/healthz")

    data = response.json()
    assert response.status_code == 200
    assert data["status"] == "healthy"
    assert data["providers"]["coingecko"]["status"] == "healthy"
    assert data["providers"]["coinmarketcap"]["status"] == "healthy"
    assert data["kv"] == {"status": "healthy", "backend": "memory"}


def test_unknown_paths_fall_through_to_static_files(client_for, upstream):
    with client_for(make_service(upstream)) as client:
        response = client.get("/exclusions/stablecoins-exclusion-list.json")

    assert response.status_code == 200
    assert "usdt" in response.json()
