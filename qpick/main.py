"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from qpick.config import settings
from qpick.db.session import engine
from qpick.db.models import Base
from qpick.api.routes import comments, notify, push, reports, search, stores, watch
from qpick.notify.push import push_sender
from qpick.search.service import search_service

# Configure structured logging
from qpick.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting qpick...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if not settings.webhook_shared_secret:
        logger.warning("WEBHOOK_SHARED_SECRET is not set; the notify webhook will reject all calls")

    if settings.push_backend == "webpush" and not (settings.vapid_public_key and settings.vapid_private_key):
        logger.warning("VAPID keys are not set; push notifications will not be delivered")

    yield

    # Shutdown
    logger.info("Shutting down...")

    try:
        await push_sender.close()
    except Exception:
        logger.exception("Error closing push sender HTTP client")

    if search_service.cache is not None:
        try:
            await search_service.cache.close()
        except Exception:
            logger.exception("Error closing score cache")

    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="qpick",
    description="Crowd-sourced convenience store stock reports and restock alerts",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(reports.router)
app.include_router(comments.router)
app.include_router(search.router)
app.include_router(stores.router)
app.include_router(watch.router)
app.include_router(push.router)
app.include_router(notify.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "qpick.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
