"""
Image Upscaler Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Explicitly constructed job store, work queue and storage
- Optional embedded worker pool (EMBEDDED_WORKERS=true)
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upscaler.core.config import settings
from upscaler.core.database import create_db_and_tables, create_db_engine, ping_database
from upscaler.core.exceptions import register_exception_handlers
from upscaler.core.logging import get_logger, setup_logging
from upscaler.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info
from upscaler.core.queue import create_work_queue
from upscaler.core.storage import StorageFactory
from upscaler.api.v1 import api_v1_router
from upscaler.modules.imagery.repositories import JobStore
from upscaler.modules.imagery.services import StatusQueryService, SubmissionGateway
from upscaler.pipeline.strategies import StrategySelector
from upscaler.pipeline.tasks import JobExecutor
from upscaler.pipeline.worker_pool import WorkerPool

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
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        queue_backend=settings.QUEUE_BACKEND
    )

    # Initialize database
    app.state.engine = create_db_engine()
    create_db_and_tables(app.state.engine)
    logger.info("database_initialized")

    app.state.store = JobStore(app.state.engine)
    app.state.queue = create_work_queue()
    app.state.storage = StorageFactory.create()
    app.state.gateway = SubmissionGateway(app.state.store, app.state.queue, app.state.storage)
    app.state.status_service = StatusQueryService(app.state.store)

    app.state.worker_pool = None
    if settings.EMBEDDED_WORKERS:
        executor = JobExecutor(
            app.state.store,
            app.state.queue,
            app.state.storage,
            StrategySelector.from_settings()
        )
        app.state.worker_pool = WorkerPool(app.state.queue, executor)
        app.state.worker_pool.start()

    # Set Prometheus app info
    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info(
        "application_ready",
        startup_time_seconds=startup_time,
        embedded_workers=settings.EMBEDDED_WORKERS
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if app.state.worker_pool is not None:
        app.state.worker_pool.stop(timeout=settings.WORKER_POLL_TIMEOUT_SECONDS + 5)
    app.state.queue.close()
    app.state.engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Asynchronous image resize and enhancement pipeline.

        - **fast-resample**: Pillow resize + re-encode (always available)
        - **ai-enhance**: Real-ESRGAN super-resolution (2x-4x upscales)
        - Requests for ai-enhance fall back to fast-resample when the binary
          is unavailable or the scale is unsupported

        ## Flow

        1. `POST /api/v1/process` returns `202` with a job id
        2. Poll `GET /api/v1/status/{job_id}` until `SUCCEEDED` or `FAILED`
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
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

        # Route template keeps job ids out of label values
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

    register_exception_handlers(app)
    app.include_router(api_v1_router)

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
    def ready(request: Request):
        """Readiness check - verifies the job store and work queue are reachable."""
        checks = {
            "database": False,
            "queue": False
        }

        try:
            checks["database"] = ping_database(request.app.state.engine)
        except Exception as e:
            logger.warning("readiness_check_failed", component="database", error=str(e))

        try:
            checks["queue"] = request.app.state.queue.ping()
        except Exception as e:
            logger.warning("readiness_check_failed", component="queue", error=str(e))

        pool = request.app.state.worker_pool
        all_ready = all(checks.values())

        return JSONResponse(
            status_code=200 if all_ready else 503,
            content={
                "ready": all_ready,
                "checks": checks,
                "embedded_workers": {
                    "running": pool.running,
                    "busy": pool.busy_workers,
                } if pool is not None else None
            }
        )

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "upscaler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
