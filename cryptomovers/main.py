from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from . import __version__
from .api import health, image_proxy, stats
from .config import settings
from .logging_config import setup_logging
from .middleware import RequestLoggingMiddleware
from .services.market_stats import shutdown_market_stats_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    yield
    # Let in-flight background refreshes finish before the process exits
    await shutdown_market_stats_service()


# Create FastAPI app
app = FastAPI(
    title="Crypto Movers API",
    description="Cached top gainers and losers from CEX and DEX aggregators",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(stats.router, tags=["Stats"])
app.include_router(image_proxy.router, tags=["Images"])

# Everything else is the static front-end
app.mount("/", StaticFiles(directory=settings.static_dir, html=True, check_dir=False), name="static")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cryptomovers.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
