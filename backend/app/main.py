"""Campaign Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import Settings, get_settings
from app.runtime import build_runtime, job_retry_strategy
from api.v1.router import api_v1_router
from api.routes import health
from api.routes.ws import router as ws_router
from api.websockets.connection_manager import manager
from campaign.jobs import InlineJobQueue, JobQueue
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db import database
from delivery.providers import build_delivery_provider
from notifications.publisher import RedisRelay, build_publisher

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        settings = get_settings()
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


def _build_job_queue(settings: Settings, runtime) -> JobQueue:
    if settings.JOB_QUEUE_BACKEND == "inline":
        return InlineJobQueue(
            runtime.engine,
            runtime.flows,
            runtime.failed_tasks,
            strategy=job_retry_strategy(settings),
        )
    from worker.job_queue import CeleryJobQueue

    return CeleryJobQueue()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()
    settings.validate_delivery()

    await database.init_db()

    delivery = build_delivery_provider(settings)
    publisher = build_publisher(settings, connection_manager=manager)
    relay = None
    if settings.NOTIFICATION_BACKEND == "redis":
        # Workers publish to Redis; this process fans out to its own sockets
        relay = RedisRelay(settings.REDIS_URL, manager, settings.NOTIFICATION_CHANNEL_PREFIX)
        await relay.start()

    runtime = build_runtime(database.AsyncSessionLocal, delivery, publisher, settings)
    queue = _build_job_queue(settings, runtime)
    scheduler = runtime.build_scheduler(queue)

    app.state.runtime = runtime
    app.state.job_queue = queue
    app.state.scheduler = scheduler

    if settings.SCHEDULER_IN_PROCESS:
        await scheduler.start()
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT}), "
        f"delivery={settings.DELIVERY_BACKEND} notifications={settings.NOTIFICATION_BACKEND} "
        f"jobs={settings.JOB_QUEUE_BACKEND} in-process scheduler={settings.SCHEDULER_IN_PROCESS}"
    )

    yield

    # Shutdown
    logger.info("Application shutting down...")
    await scheduler.stop()
    if isinstance(queue, InlineJobQueue):
        await queue.drain()
    if relay is not None:
        await relay.stop()
    await delivery.close()
    await publisher.close()
    await database.close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Executes graph-defined marketing campaigns: actions, delays "
                    "and conditions walked per subject, durably and exactly once.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    # WebSocket endpoint (not under /api/v1, mounted directly on the app)
    app.include_router(ws_router)

    return app


app = create_app()
