"""
FastAPI app with:
- Router include
- One WaterDataService built at startup and shared through app.state
- Optional background preload of the whole of Texas (stations and waterways)
"""

from __future__ import annotations
import os
import asyncio
import logging
from fastapi import FastAPI
from dotenv import load_dotenv

load_dotenv()

from api.cors import add_cors
from api.endpoints import RateLimiter, router
from utils.bbox import TEXAS_BBOX
from utils.service import WaterDataService

# Configure logging at the application level
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Controls
PRELOAD_TEXAS = os.getenv("PRELOAD_TEXAS", "0") == "1"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app = FastAPI(title="Water Data API")
add_cors(app, origins=CORS_ORIGINS)
app.include_router(router)


async def _preload_texas(service: WaterDataService):
    logger.info("[PRELOAD] warming Texas stations and waterways")
    try:
        status = await asyncio.to_thread(service.preload_region, TEXAS_BBOX)
        logger.info("[PRELOAD] done: %s", status)
    except Exception:
        logger.exception("[PRELOAD] failed")


@app.on_event("startup")
async def startup():
    if getattr(app.state, "service", None) is None:
        app.state.service = WaterDataService()
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = RateLimiter()
    if PRELOAD_TEXAS:
        asyncio.create_task(_preload_texas(app.state.service))
