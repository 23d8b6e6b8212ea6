"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from api.routes import health, status, control
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import SyncScheduler

setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sync engine with the app and stop it gracefully"""
    logger.info("Starting Listing Sync Engine")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = SyncScheduler()
        scheduler.start()
        app.state.scheduler = scheduler

    yield

    logger.info("Shutting down Listing Sync Engine")
    if app.state.scheduler is not None:
        await app.state.scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Listing Sync Engine",
    description="Incremental listing sync, media rehosting and observability",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(status.router)
app.include_router(control.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Listing Sync Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "sync": "/status/sync",
            "progress": "/status/progress",
            "problematic": "/status/problematic",
            "rate_limits": "/status/rate-limits",
            "engine": "/status/engine",
            "media_delay": "/control/media-delay",
        }
    }
