"""
Service wiring.

build_container() turns Settings into explicit policy objects and picks the
storage adapters:
- STORAGE_BACKEND=memory: everything in-process (development, tests)
- STORAGE_BACKEND=sql: bookings, payments and audit entries in the database
- REDIS_ENABLED: rate-limit counters and idempotency keys in Redis

Courses, their rules and the inventory are supplied by the surrounding booking
system; the in-process adapters stand in for them here.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from booking_lifecycle.core.clock import Clock, utc_now
from booking_lifecycle.core.config import Settings
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.db.session import create_engine, create_session_factory
from booking_lifecycle.infrastructure import close_redis, get_redis
from booking_lifecycle.repositories.interfaces import (
    AuditRepository,
    BookingRepository,
    CourseRepository,
    IdempotencyStore,
    InventoryStore,
    PaymentRepository,
    RateLimitStore,
)
from booking_lifecycle.repositories.memory import (
    InMemoryAuditRepository,
    InMemoryBookingRepository,
    InMemoryCourseRepository,
    InMemoryIdempotencyStore,
    InMemoryInventory,
    InMemoryPaymentRepository,
    InMemoryRateLimitStore,
)
from booking_lifecycle.repositories.redis_store import RedisIdempotencyStore, RedisRateLimitStore
from booking_lifecycle.repositories.sql import SqlAuditRepository, SqlBookingRepository, SqlPaymentRepository
from booking_lifecycle.schemas.audit import AuditSettings
from booking_lifecycle.schemas.course import CourseEditRules
from booking_lifecycle.schemas.payment import PaymentPolicies
from booking_lifecycle.services.alerts import AlertDispatcher, LoggingAlertSink, WebhookAlertSink
from booking_lifecycle.services.audit_service import AuditService
from booking_lifecycle.services.booking_edit_service import BookingEditService
from booking_lifecycle.services.interfaces import AlertSink, PaymentGateway, SimulatedPaymentGateway
from booking_lifecycle.services.payment_manager import PaymentManager
from booking_lifecycle.services.policy_engine import CancellationPolicyService
from booking_lifecycle.services.rate_limiter import EditRateLimiter

logger = get_logger(__name__)


def payment_policies_from(settings: Settings) -> PaymentPolicies:
    return PaymentPolicies(
        authorization_hold_days=settings.PAYMENT_AUTHORIZATION_HOLD_DAYS,
        auto_capture=settings.PAYMENT_AUTO_CAPTURE,
        auto_capture_delay_minutes=settings.PAYMENT_AUTO_CAPTURE_DELAY_MINUTES,
        refund_processing_days=settings.PAYMENT_REFUND_PROCESSING_DAYS,
        dispute_response_days=settings.PAYMENT_DISPUTE_RESPONSE_DAYS,
        minimum_refund_amount_cents=settings.PAYMENT_MINIMUM_REFUND_CENTS,
        maximum_refund_days=settings.PAYMENT_MAXIMUM_REFUND_DAYS,
        currency=settings.PAYMENT_CURRENCY,
        gateway_timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        gateway_max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        gateway_retry_backoff_seconds=settings.GATEWAY_RETRY_BACKOFF_SECONDS,
    )


def audit_settings_from(settings: Settings) -> AuditSettings:
    return AuditSettings(
        retention_days=settings.AUDIT_RETENTION_DAYS,
        mass_export_threshold=settings.AUDIT_MASS_EXPORT_THRESHOLD,
        search_limit=settings.AUDIT_SEARCH_LIMIT,
        export_limit=settings.AUDIT_EXPORT_LIMIT,
        record_purges=settings.AUDIT_RECORD_PURGES,
    )


def edit_rules_from(settings: Settings) -> CourseEditRules:
    return CourseEditRules(
        edit_lock_hours=settings.EDIT_LOCK_HOURS,
        cancellation_lock_hours=settings.CANCELLATION_LOCK_HOURS,
        free_reschedules=settings.FREE_RESCHEDULES,
        reschedule_fee_cents=settings.RESCHEDULE_FEE_CENTS,
        transfer_fee_cents=settings.TRANSFER_FEE_CENTS,
        max_reschedules_per_booking=settings.MAX_RESCHEDULES_PER_BOOKING,
        min_players_reduction_hours=settings.MIN_PLAYERS_REDUCTION_HOURS,
        player_reduction_refund_percent_early=settings.PLAYER_REDUCTION_REFUND_PERCENT_EARLY,
        player_reduction_refund_percent_late=settings.PLAYER_REDUCTION_REFUND_PERCENT_LATE,
        max_edits_per_hour=settings.MAX_EDITS_PER_HOUR,
        rate_limit_window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )


@dataclass
class Container:
    settings: Settings
    bookings: BookingRepository
    courses: CourseRepository
    inventory: InventoryStore
    gateway: PaymentGateway
    alerts: AlertDispatcher
    payments: PaymentManager
    policy_engine: CancellationPolicyService
    audit: AuditService
    edits: BookingEditService
    engine: Optional[AsyncEngine] = field(default=None, repr=False)
    uses_redis: bool = False

    async def close(self) -> None:
        await self.payments.shutdown()
        await self.alerts.stop()
        if self.engine is not None:
            await self.engine.dispose()
        if self.uses_redis:
            await close_redis()
        logger.info("container_closed")


async def build_container(
    settings: Settings,
    clock: Clock = utc_now,
    gateway: Optional[PaymentGateway] = None,
    inventory: Optional[InventoryStore] = None,
    alert_sinks: Optional[list[AlertSink]] = None,
) -> Container:
    engine = None
    if settings.STORAGE_BACKEND == "sql":
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
        bookings: BookingRepository = SqlBookingRepository(session_factory)
        payment_repo: PaymentRepository = SqlPaymentRepository(session_factory)
        audit_repo: AuditRepository = SqlAuditRepository(session_factory)
    elif settings.STORAGE_BACKEND == "memory":
        bookings = InMemoryBookingRepository()
        payment_repo = InMemoryPaymentRepository()
        audit_repo = InMemoryAuditRepository()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")

    rate_store: RateLimitStore = InMemoryRateLimitStore()
    idempotency: IdempotencyStore = InMemoryIdempotencyStore()
    redis_client = await get_redis() if settings.REDIS_ENABLED else None
    if redis_client is not None:
        rate_store = RedisRateLimitStore(redis_client)
        idempotency = RedisIdempotencyStore(redis_client)
    elif settings.REDIS_ENABLED:
        logger.warning("redis_unavailable", message="Falling back to in-process rate limits and idempotency keys")

    if alert_sinks is None:
        alert_sinks = [LoggingAlertSink()]
        if settings.ALERT_WEBHOOK_URL:
            alert_sinks.append(
                WebhookAlertSink(settings.ALERT_WEBHOOK_URL, timeout_seconds=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS)
            )
    alerts = AlertDispatcher(alert_sinks, queue_size=settings.ALERT_QUEUE_SIZE)

    courses = InMemoryCourseRepository(default_rules=edit_rules_from(settings))
    inventory = inventory or InMemoryInventory()
    gateway = gateway or SimulatedPaymentGateway()
    payments = PaymentManager(payment_repo, gateway, payment_policies_from(settings), clock=clock)
    policy_engine = CancellationPolicyService(
        courses,
        clock=clock,
        manual_review_threshold_cents=settings.MANUAL_REVIEW_THRESHOLD_CENTS,
        override_refund_percent=settings.ADMIN_OVERRIDE_REFUND_PERCENT,
    )
    audit = AuditService(audit_repo, alerts, audit_settings_from(settings), clock=clock)
    edits = BookingEditService(
        bookings,
        courses,
        inventory,
        payments,
        policy_engine,
        audit,
        EditRateLimiter(rate_store, clock=clock),
        idempotency,
        clock=clock,
        refund_wait_timeout_seconds=settings.REFUND_WAIT_TIMEOUT_SECONDS,
        idempotency_ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
    )

    logger.info(
        "container_built",
        storage_backend=settings.STORAGE_BACKEND,
        redis=redis_client is not None,
        alert_sinks=[type(s).__name__ for s in alert_sinks],
    )
    return Container(
        settings=settings,
        bookings=bookings,
        courses=courses,
        inventory=inventory,
        gateway=gateway,
        alerts=alerts,
        payments=payments,
        policy_engine=policy_engine,
        audit=audit,
        edits=edits,
        engine=engine,
        uses_redis=redis_client is not None,
    )
