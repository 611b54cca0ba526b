"""Command line entry points for running and poking the service locally"""

import argparse
import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from .config import settings
from .core.errors import MarketDataError
from .logging_config import setup_logging
from .services.market_stats import MarketStatsService


def print_movers(title: str, rows: List[Dict[str, Any]], limit: int = 10) -> None:
    print(f"\n{title}")
    print("-" * 50)
    if not rows:
        print("  (none)")
        return
    for i, row in enumerate(rows[:limit], 1):
        change = row.get("change_24h")
        price = row.get("price")
        change_str = f"{change:+.2f}%" if isinstance(change, (int, float)) else "n/a"
        price_str = f"${price:,.6g}" if isinstance(price, (int, float)) else "No price"
        print(f"{i:2d}. {str(row.get('symbol', '?')).upper():<10} {change_str:>10} {price_str:>16}")


def print_payload(payload: Dict[str, Any], source: Optional[str] = None) -> None:
    label = payload.get("network") or payload.get("source") or "cex"
    print(f"\n📈 Top movers ({label})")
    print("=" * 50)
    if source:
        print(f"X-Source: {source}")
    print(f"Scanned: {payload.get('totalScanned', 0)}  Excluded: {payload.get('excludedCount', 0)}"
          f"  Partial: {payload.get('isPartial', False)}")
    if payload.get("lastUpdateFailed"):
        print(f"⚠️  Last refresh failed: {payload.get('lastError')}")
    print_movers("Gainers", payload.get("gainers") or [])
    print_movers("Losers", payload.get("losers") or [])


async def cli_refresh(network: Optional[str], deep: bool) -> int:
    """Run one refresh against the configured KV store"""
    service = MarketStatsService()
    try:
        source = service.source_for(network)
        print(f"🔄 Refreshing {source.cache_key} ({'deep scan' if deep else 'sprint'})...")
        payload = await service.refresh(source, deep=deep)
    except MarketDataError as e:
        print(f"❌ {e.category.value}: {e.message}")
        return 1
    finally:
        await service.aclose()

    print_payload(payload.model_dump(by_alias=True))
    return 0


async def cli_show(network: Optional[str], base_url: str) -> int:
    """Query a running server"""
    params = {"network": network} if network else None
    async with httpx.AsyncClient(timeout=60) as client:
        try:
            response = await client.get(f"{base_url.rstrip('/')}/api/stats", params=params)
        except httpx.HTTPError as e:
            print(f"❌ Request failed: {e}")
            return 1

    try:
        body = response.json()
    except json.JSONDecodeError:
        print(f"❌ Non-JSON response ({response.status_code})")
        return 1

    if response.status_code != 200:
        print(f"❌ {body.get('reason', 'error')}: {body.get('message')}")
        return 1
    print_payload(body, response.headers.get("x-source"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crypto Movers CLI")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)
    serve_parser.add_argument("--reload", action="store_true")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh one cache key now")
    refresh_parser.add_argument("--network", help="DEX network (omit for CEX data)")
    refresh_parser.add_argument("--deep", action="store_true", help="Deep scan instead of a sprint fetch")

    show_parser = subparsers.add_parser("show", help="Print movers from a running server")
    show_parser.add_argument("--network", help="DEX network (omit for CEX data)")
    show_parser.add_argument("--base-url", default=f"http://{settings.host}:{settings.port}")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "serve":
        import uvicorn
        uvicorn.run(
            "cryptomovers.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
        )
        return 0

    setup_logging()
    if args.command == "refresh":
        return asyncio.run(cli_refresh(args.network, args.deep))
    if args.command == "show":
        return asyncio.run(cli_show(args.network, args.base_url))

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
