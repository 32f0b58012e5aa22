"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import access_log_middleware, global_exception_handler
from app.core.otel import setup_telemetry
from app.db.redis import get_redis_client
from app.db.session import engine, init_db

# Import routers
from app.api import donations, webhooks, compliance, monitoring

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    setup_telemetry(app, engine)

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    tasks = []
    if settings.SCHEDULER_ENABLED:
        logger.info("Starting background tasks...")
        from app.tasks.scheduler import retry_parked_task, event_sync_task

        tasks.append(asyncio.create_task(retry_parked_task()))
        tasks.append(asyncio.create_task(event_sync_task()))
        logger.info("Background tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# Create FastAPI app
app = FastAPI(
    title="Campaign Ledger",
    description="Donation ledger and campaign-finance compliance engine",
    version="0.1.0",
    lifespan=lifespan
)

app.middleware("http")(access_log_middleware)
app.add_exception_handler(Exception, global_exception_handler)

# Include routers
app.include_router(donations.router)
app.include_router(webhooks.router)
app.include_router(compliance.router)
app.include_router(monitoring.router)
