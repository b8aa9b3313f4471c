"""
Ticket Queue API - Main Application Entry Point

Admission control for high-demand ticket sales:
- Per-event concurrency cap on simultaneous purchasers
- Time-boxed purchase sessions with extension and lazy expiry
- Background reconcilers for expiry, per-user limits and sale lifecycle
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketqueue.api.errors import register_exception_handlers
from ticketqueue.api.middleware import RequestLoggingMiddleware
from ticketqueue.api.router import api_router
from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger, setup_logging
from ticketqueue.core.metrics import metrics_endpoint
from ticketqueue.infrastructure import close_redis, get_redis, slot_signals
from ticketqueue.services import notifications
from ticketqueue.services.admission_processor import admission_processor
from ticketqueue.services.event_status import EventStatusUpdater
from ticketqueue.services.expiry_reconciler import ExpiryReconciler
from ticketqueue.services.limit_enforcer import LimitEnforcer
from ticketqueue.services.reminder_service import ReminderService

settings = get_settings()


def build_background_loops() -> list:
    return [
        ExpiryReconciler(),
        LimitEnforcer(),
        ReminderService(),
        EventStatusUpdater(processor=admission_processor),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        instance=admission_processor.owner_id,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
        await slot_signals.start_listener()
    else:
        logger.warning("redis_unavailable", message="Slot-freed signals stay local to this instance")

    loops = []
    if settings.SCHEDULER_ENABLED:
        await admission_processor.resume_on_boot()
        loops = build_background_loops()
        for loop in loops:
            loop.start()
    app.state.background_loops = loops

    yield

    for loop in loops:
        await loop.stop()
    await admission_processor.stop_all()
    await slot_signals.stop_listener()
    await notifications.drain()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Virtual queue and purchase-session admission control for ticket sales",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

# Routes
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    loops = getattr(app.state, "background_loops", [])
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "instance": admission_processor.owner_id,
        "scheduler_enabled": settings.SCHEDULER_ENABLED,
        "background_loops": [loop.status() for loop in loops],
        "processing_events": admission_processor.processing_events(),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
