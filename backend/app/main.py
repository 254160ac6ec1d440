"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import access_log_middleware, register_exception_handlers, setup_cors_middleware
from app.core.otel import (
    initialize_otel,
    instrument_fastapi,
    instrument_httpx,
    instrument_sqlalchemy,
    setup_otel_logging,
)
from app.db.redis import get_redis_client
from app.db.session import engine, init_db
from app.tasks.scheduler import credit_expiry_scheduler_task

# Import routers
from app.api import admin, ai, auth, credits

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

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

    instrument_sqlalchemy(engine)

    logger.info("Starting credit expiry scheduler...")
    expiry_task = asyncio.create_task(credit_expiry_scheduler_task())

    yield

    # Shutdown
    logger.info("Shutting down...")
    expiry_task.cancel()
    try:
        await expiry_task
    except asyncio.CancelledError:
        pass


# Create FastAPI app
app = FastAPI(
    title="Tutor Credits Backend",
    description="Credit-metered AI tutoring platform",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)
register_exception_handlers(app)

# Include routers
app.include_router(auth.router)
app.include_router(credits.router)
app.include_router(ai.router)
app.include_router(admin.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
