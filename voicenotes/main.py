"""FastAPI application for voice note processing."""

import logging

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from voicenotes import openai_client, storage_client
from voicenotes.config import settings
from voicenotes.db.connection import close_db, init_db
from voicenotes.processing_api import router as processing_router
from voicenotes.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Voice Notes",
    description="Voice note transcription and analysis pipeline",
    version="1.0.0"
)

# Register API routers
app.include_router(processing_router)

# Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the processing scheduler on startup."""
    try:
        await init_db()
        logger.info("Database connection initialized")
    except Exception as e:
        logger.warning(f"Database initialization failed: {e}")

    logger.info("Voice Notes started")
    logger.info(f"Processing enabled: {settings.PROCESSING_ENABLED}")
    logger.info(f"Rate limiter backend: {settings.RATE_LIMIT_BACKEND}")

    start_scheduler()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler, close HTTP clients and the database on shutdown."""
    stop_scheduler()

    await openai_client.close_client()
    await storage_client.close_client()
    logger.info("HTTP clients closed")

    await close_db()
    logger.info("Database connection closed")


@app.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "ok", "processing_enabled": settings.PROCESSING_ENABLED}
