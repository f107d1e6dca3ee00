"""
Imagery Transform Service - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- One ServiceContainer per application, opened in the lifespan
"""

import time
from contextlib import asynccontextmanager
from typing import Callable, ContextManager, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.core.config import settings
from src.core.container import ServiceContainer, open_container
from src.core.logging import setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.api.v1 import api_v1_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


ContainerFactory = Callable[[], ContextManager[ServiceContainer]]


def create_app(open_services: Optional[ContainerFactory] = None) -> FastAPI:
    """
    Build the application.

    Args:
        open_services: Factory returning a context manager that yields the
            ServiceContainer; defaults to open_container(settings)
    """
    open_services = open_services or (lambda: open_container(settings))

    # =========================================================================
    # Lifespan Handler
    # =========================================================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler - startup and shutdown."""
        startup_start = time.time()

        logger.info(
            "application_starting",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT
        )

        with open_services() as container:
            app.state.container = container

            # Blocks until the broker answers; retried at a fixed interval
            await run_in_threadpool(container.queue.wait_until_ready)

            set_app_info(
                version=settings.APP_VERSION,
                environment=settings.ENVIRONMENT
            )

            startup_time = time.time() - startup_start
            logger.info("application_ready", startup_time_seconds=startup_time)

            yield

            logger.info("application_shutting_down")
            app.state.container = None

        logger.info("application_shutdown_complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Image transformation service:

        - **Upload** images and download them in any supported format
        - **Transform** synchronously (bytes in the response) or asynchronously
          (durable job queue, status polling)
        - **Result cache** keyed by image and canonical transformation spec
        - **Observability**: Structured logging, Prometheus metrics

        All endpoints are versioned under `/api/v1/`.
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # =========================================================================
    # Middleware
    # =========================================================================

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
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = route.path if route is not None else request.url.path

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

    register_exception_handlers(app)
    app.include_router(api_v1_router)

    # =========================================================================
    # Root Endpoints
    # =========================================================================

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

    @app.get("/ready", tags=["health"])
    async def ready(request: Request):
        """Readiness check - verifies dependencies are available."""
        container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
        checks = {"database": False, "cache": False}

        if container is not None:
            def check_database():
                with container.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

            try:
                await run_in_threadpool(check_database)
                checks["database"] = True
            except Exception as e:
                logger.warning("readiness_database_failed", error=str(e))

            cache_stats = await run_in_threadpool(container.cache.stats)
            checks["cache"] = cache_stats.get("available", False)

        all_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if all_ready else 503,
            content={"ready": all_ready, "checks": checks}
        )

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
