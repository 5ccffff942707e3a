"""
FastAPI application entrypoint.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from api.routes import router, live_session, settings

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # camera and worker pools must not outlive the server
    loop = live_session["loop"]
    if loop is not None:
        logger.info("[api] shutting down live detection loop")
        loop.close()
        live_session["loop"] = None


app = FastAPI(title="Smart Signage Targeting API", version="1.0.0", lifespan=lifespan)
app.include_router(router)


@app.get("/health")
def health() -> dict:
    """
    Health check endpoint.

    Returns:
        dict: Status plus whether live detection is running and the detector tier in use.
    """
    loop = live_session["loop"]
    return {
        "status": "ok",
        "live_running": bool(loop is not None and loop.running),
        "detector_tier": settings.DETECTOR_TIER,
    }
