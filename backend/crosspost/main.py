"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crosspost.core.config import settings
from crosspost.core.logging import setup_logging
from crosspost.core.otel import (
    initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy, setup_otel_logging
)
from crosspost.db.redis import get_redis_client
from crosspost.db.session import engine, init_db

# Import routers
from crosspost.api import jobs, oauth, websocket

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

    # Start background tasks
    logger.info("Starting background tasks...")
    from crosspost.tasks.scheduler import scheduler_task
    from crosspost.tasks.token_tasks import token_renewal_task

    background_tasks = [
        asyncio.create_task(scheduler_task()),
        asyncio.create_task(token_renewal_task()),
    ]
    logger.info("Background tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)


# Create FastAPI app
app = FastAPI(
    title="Crosspost Backend",
    description="Cross-platform video publishing and scheduling",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000"
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(oauth.router)
app.include_router(oauth.connections_router)  # Separate router for /api/connections
app.include_router(jobs.router)
app.include_router(jobs.contents_router)  # Separate router for /api/contents
app.include_router(jobs.attempts_router)  # Separate router for /api/attempts
app.include_router(jobs.internal_router)  # Separate router for /api/internal
app.include_router(websocket.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


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


if __name__ == "__main__":
    import uvicorn

    # Reload needs the app as an import string
    reload = settings.ENVIRONMENT == "development"
    config = {
        "host": "0.0.0.0",
        "port": 8000,
        "timeout_keep_alive": 1800,  # long multipart uploads to the page platform run inside requests
        "timeout_graceful_shutdown": 30,
    }

    if reload:
        uvicorn.run("crosspost.main:app", reload=True, **config)
    else:
        uvicorn.run(app, **config)
