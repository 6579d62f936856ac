"""
PixelMill - Image Processing Service

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- In-process job queue and worker pool started in the lifespan
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from pixelmill.core.config import settings
from pixelmill.core.logging import setup_logging, get_logger
from pixelmill.core.exceptions import register_exception_handlers
from pixelmill.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from pixelmill.api.v1 import api_v1_router
from pixelmill.pipeline.service import ProcessingService


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
    """Build the processing service, start its workers, stop them on shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    service = ProcessingService.from_settings()
    service.start()
    app.state.service = service

    logger.info(
        "application_ready",
        startup_time_seconds=time.time() - startup_start,
        workers=settings.WORKER_COUNT,
        storage_backend=settings.STORAGE_BACKEND
    )

    yield

    logger.info("application_shutting_down")
    service.stop()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Image processing service with:

    - **Format conversion**: JPEG, PNG, WebP, AVIF and SVG rasterization
    - **Smart crop**: Removes uniform borders
    - **Compression tuning**: Target a quality or a byte ceiling
    - **Palette extraction**: Dominant colors with weights
    - **Upscaling**: External inference service with bicubic fallback

    Upload an image to `/api/v1/images`, submit jobs to `/api/v1/jobs`
    and poll them until they reach a terminal status.
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

cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

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
async def health(request: Request):
    """Health check endpoint."""
    service: ProcessingService = request.app.state.service
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "queue_depth": service.queue.depth,
        "cache": service.cache.stats()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pixelmill.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
