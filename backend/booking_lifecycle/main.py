"""
Tee Time Booking Lifecycle API - Main Application Entry Point

Post-creation lifecycle of golf tee-time bookings:
- Cancellation refunds from per-course policy tiers
- Edits, reschedules and transfers with charge/refund settlement
- Payment intents, refunds and disputes behind a gateway with timeouts
- Append-only audit trail with alerts on critical actions
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_lifecycle.api.exceptions import register_exception_handlers
from booking_lifecycle.api.middleware import RequestLoggingMiddleware
from booking_lifecycle.api.router import api_router
from booking_lifecycle.container import build_container
from booking_lifecycle.core.config import get_settings
from booking_lifecycle.core.logging import get_logger, setup_logging
from booking_lifecycle.core.metrics import metrics_endpoint
from booking_lifecycle.infrastructure import redis_status

settings = get_settings()


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
        storage_backend=settings.STORAGE_BACKEND,
    )

    app.state.container = await build_container(settings)

    yield

    await app.state.container.close()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Edits, cancellations, payments and audit trail for tee-time bookings",
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

app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)

app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus the backing stores in use; Redis trouble degrades, never fails, the check."""
    redis_state = await redis_status()
    return {
        "status": "healthy" if redis_state != "unreachable" else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "storage_backend": settings.STORAGE_BACKEND,
        "redis": redis_state,
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
