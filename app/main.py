# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from app.core.config import settings
from app.api.endpoints import facilitator, posts
from app.x402.facilitator import get_settlement_notifier
from app.x402.middleware import X402Middleware
from app.x402.replay import get_replay_cache
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Expired replay records are swept in the background while the app runs
    cache = get_replay_cache()
    cache.start_background_sweep(settings.X402_REPLAY_SWEEP_INTERVAL_SECONDS)
    yield
    cache.stop_background_sweep()
    get_settlement_notifier().shutdown()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(X402Middleware)

app.include_router(facilitator.router, prefix=f"{settings.API_PREFIX}/facilitator", tags=["facilitator"])
app.include_router(posts.router, prefix=f"{settings.API_PREFIX}/posts", tags=["posts"])
app.include_router(posts.page_router, prefix=settings.X402_PROTECTED_PATH_PREFIX.rstrip("/"), tags=["posts"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "network": settings.X402_NETWORK,
        "x402_enabled": settings.X402_ENABLED,
    }
