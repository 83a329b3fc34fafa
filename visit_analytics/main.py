"""
FastAPI Application — entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visit_analytics.config import settings
from visit_analytics.database import init_db, close_db
from visit_analytics.redis_conn import get_redis, close_redis
from visit_analytics.routes import router, VERSION
from visit_analytics.services.analytics_flush import AnalyticsFlusher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)


async def periodic_flush(interval: int = 300) -> None:
    """Flush the page view queue every ``interval`` seconds."""
    flusher = AnalyticsFlusher.from_settings(get_redis())
    while True:
        try:
            await asyncio.sleep(interval)
            result = await flusher.flush_with_lock()
            if not result.success:
                logger.warning("Scheduled flush did not complete — batch stays queued")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Scheduled flush error: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Visit Analytics API v%s", VERSION)
    await init_db()
    logger.info("✅ Database ready")

    flush_task = None
    if settings.analytics_flush_interval > 0:
        flush_task = asyncio.create_task(
            periodic_flush(interval=settings.analytics_flush_interval)
        )
        logger.info("⏱️  Flushing page views every %ds", settings.analytics_flush_interval)
    else:
        logger.info("ℹ️ Scheduled flush disabled — relying on external triggers")

    yield

    # Shutdown
    if flush_task:
        flush_task.cancel()
        try:
            await flush_task
        except asyncio.CancelledError:
            pass
    await close_redis()
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Visit Analytics API",
    description=(
        "Turns queued page views into per-visit records, daily archives "
        "and durable view counters."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Visit Analytics API",
        "version": VERSION,
        "docs": "/docs",
    }
