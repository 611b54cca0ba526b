from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse

from ..services.image_proxy import EDGE_CACHE_CONTROL, ImageFetchError, ImageProxy, InvalidImageUrl
from ..services.market_stats import MarketStatsService, get_market_stats_service

router = APIRouter(prefix="/api")


def get_image_proxy(service: MarketStatsService = Depends(get_market_stats_service)) -> ImageProxy:
    return ImageProxy(service.kv, config=service.config)


@router.get("/image-proxy")
async def image_proxy(
    url: Optional[str] = Query(default=None, description="Absolute http(s) image URL"),
    proxy: ImageProxy = Depends(get_image_proxy),
) -> Response:
    try:
        image = await proxy.get(url)
    except InvalidImageUrl as exc:
        return JSONResponse(status_code=400, content={"error": True, "message": str(exc)})
    except ImageFetchError as exc:
        return JSONResponse(status_code=502, content={"error": True, "message": str(exc)})

    return Response(
        content=image.content,
        media_type=image.content_type,
        headers={
            "Cache-Control": EDGE_CACHE_CONTROL,
            "Access-Control-Allow-Origin": "*",
            "X-Cache": "HIT" if image.cache_hit else "MISS",
        },
    )
