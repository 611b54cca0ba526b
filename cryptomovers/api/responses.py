"""Maps refresh results and failures onto HTTP responses."""

import logging
from typing import Dict, Optional

from fastapi import Response
from fastapi.responses import JSONResponse

from ..core.errors import ErrorCategory, MarketDataError
from ..core.refresh import ServeResult
from ..types.responses import ErrorResponse

logger = logging.getLogger(__name__)

NO_STORE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}


def _headers(source: Optional[str] = None, retry_after: Optional[float] = None) -> Dict[str, str]:
    headers = dict(NO_STORE_HEADERS)
    if source:
        headers["X-Source"] = source
    if retry_after is not None:
        headers["Retry-After"] = str(int(retry_after))
    return headers


def serve_result_response(result: ServeResult) -> Response:
    """Cached or freshly built payload, body passed through unchanged."""
    return Response(
        content=result.body,
        media_type="application/json",
        headers=_headers(result.source.value),
    )


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, MarketDataError):
        body = ErrorResponse(message=exc.message, reason=exc.category.value, retry_after=exc.retry_after)
        level = logging.ERROR if exc.category is ErrorCategory.CONFIGURATION else logging.WARNING
        logger.log(level, "Serving %s error: %s", exc.category.value, exc.message)
    else:
        logger.exception("Unhandled error while serving market data")
        body = ErrorResponse(message=str(exc) or "Internal error", reason=ErrorCategory.UNKNOWN.value)

    return JSONResponse(
        status_code=500,
        content=body.model_dump(),
        headers=_headers(retry_after=body.retry_after),
    )
