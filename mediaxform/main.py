"""
Media Transform Service - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Transform requests dispatched to Celery workers
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mediaxform.api.v1 import api_v1_router
from mediaxform.container import build_container
from mediaxform.core.config import settings
from mediaxform.core.exceptions import register_exception_handlers
from mediaxform.core.logging import get_logger, setup_logging
from mediaxform.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build collaborators on startup, release connections on shutdown."""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    # A container injected beforehand (tests, embedding) is left alone
    container = getattr(app.state, "container", None)
    owned = container is None
    if owned:
        container = build_container()
        app.state.container = container

    await container.startup()
    logger.info("database_initialized")

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )
    logger.info("application_ready")

    yield

    logger.info("application_shutting_down")
    if owned:
        await container.shutdown()
        del app.state.container
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Media storage with asynchronous, cached image transforms.

    ## Transform Pipeline

    Stages run in a fixed order regardless of request field order:
    resize, rotate, crop, format, filters, flip/mirror, compress, watermark.

    `POST /api/v1/media/{id}/transform` returns `{"status": "queued"}`
    immediately; results appear under `/api/v1/media/{id}/derived`.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)
    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mediaxform.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
