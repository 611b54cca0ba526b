from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..services.market_stats import MarketStatsService, get_market_stats_service

router = APIRouter()


@router.get("/healthz")
async def health_check(service: MarketStatsService = Depends(get_market_stats_service)) -> Dict[str, Any]:
    """Health check endpoint that verifies provider and KV status"""
    report = await service.health()
    provider_status = report["providers"]

    all_healthy = all(
        status["status"] in ["healthy", "unavailable"]
        for status in provider_status.values()
    )
    available_providers = sum(
        1 for status in provider_status.values()
        if status["status"] == "healthy"
    )
    kv_healthy = report["kv"]["status"] == "healthy"

    return {
        "status": "healthy" if all_healthy and kv_healthy and available_providers > 0 else "degraded",
        "providers": provider_status,
        "kv": report["kv"],
        "available_providers": available_providers,
        "total_providers": len(provider_status),
        "background_tasks": report["background_tasks"],
    }
