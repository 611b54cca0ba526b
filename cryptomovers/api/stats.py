from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ..services.market_stats import MarketStatsService, get_market_stats_service
from .responses import error_response, serve_result_response

router = APIRouter(prefix="/api")


async def _serve(service: MarketStatsService, network: Optional[str], *, dex_only: bool) -> Response:
    try:
        source = service.source_for(network, dex_only=dex_only)
        result = await service.serve(source)
    except Exception as exc:  # noqa: BLE001
        return error_response(exc)
    return serve_result_response(result)


@router.get("/stats")
async def get_stats(
    network: Optional[str] = Query(default=None, description="DEX network; omit for CEX data"),
    service: MarketStatsService = Depends(get_market_stats_service),
) -> Response:
    """Top gainers and losers. CEX by default, DEX when a network is given."""
    return await _serve(service, network, dex_only=False)


@router.get("/dex-stats")
async def get_dex_stats(
    network: Optional[str] = Query(default=None, description="solana, ethereum, bnb, base or all"),
    service: MarketStatsService = Depends(get_market_stats_service),
) -> Response:
    """Top DEX gainers and losers for one network (all networks by default)."""
    return await _serve(service, network, dex_only=True)
