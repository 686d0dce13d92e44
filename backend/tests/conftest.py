"""
Pytest fixtures: pinned clock, in-memory container, seeded course and bookings,
and an HTTP client wired to the same container.

Time is frozen at NOW; bookings are placed relative to it so every policy
window is deterministic.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from booking_lifecycle.api.dependencies import get_container
from booking_lifecycle.container import Container, build_container
from booking_lifecycle.core.clock import FrozenClock
from booking_lifecycle.core.config import Settings
from booking_lifecycle.main import app
from booking_lifecycle.repositories.memory import InMemoryInventory
from booking_lifecycle.schemas.alert import Alert
from booking_lifecycle.schemas.audit import Actor, ActorRole
from booking_lifecycle.schemas.booking import AddOn, Booking, BookingStatus, CustomerInfo, PaymentStatus
from booking_lifecycle.schemas.course import Course
from booking_lifecycle.services.interfaces import AlertSink, SimulatedPaymentGateway

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
COURSE_ID = "course_pine_valley"
OWNER_ID = "cust_alice"


class RecordingAlertSink(AlertSink):
    def __init__(self):
        self.alerts: list[Alert] = []

    async def send(self, alert: Alert) -> None:
        self.alerts.append(alert)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        STORAGE_BACKEND="memory",
        REDIS_ENABLED=False,
        GATEWAY_TIMEOUT_SECONDS=0.2,
        GATEWAY_MAX_ATTEMPTS=3,
        GATEWAY_RETRY_BACKOFF_SECONDS=0,
        REFUND_WAIT_TIMEOUT_SECONDS=1.0,
        ALERT_WEBHOOK_URL="",
    )


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway()


@pytest.fixture
def inventory() -> InMemoryInventory:
    return InMemoryInventory(default_capacity=4)


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest_asyncio.fixture
async def container(settings, clock, gateway, inventory, alert_sink) -> AsyncGenerator[Container, None]:
    built = await build_container(
        settings, clock=clock, gateway=gateway, inventory=inventory, alert_sinks=[alert_sink]
    )
    yield built
    await built.close()


@pytest_asyncio.fixture
async def course(container: Container) -> Course:
    return await container.courses.save_course(Course(
        id=COURSE_ID,
        name="Pine Valley",
        min_players=1,
        max_players=4,
        min_lead_time_hours=3,
        add_on_catalog={"cart": 2500, "range_balls": 800},
        add_on_names={"cart": "Golf cart", "range_balls": "Range balls"},
    ))


@pytest.fixture
def customer() -> Actor:
    return Actor(id=OWNER_ID, name="Alice Customer", role=ActorRole.CUSTOMER, ip_address="203.0.113.5")


@pytest.fixture
def staff() -> Actor:
    return Actor(id="staff_bob", name="Bob Staff", role=ActorRole.STAFF, email="bob@course.example")


async def seed_booking(
    container: Container,
    hours_ahead: float = 72,
    players: int = 4,
    total_cents: int = 20000,
    add_ons: Optional[list[AddOn]] = None,
    status: BookingStatus = BookingStatus.CONFIRMED,
    booking_id: str = "bk_1",
    owner_id: str = OWNER_ID,
    reschedules_used: int = 0,
    payment_status: PaymentStatus = PaymentStatus.CAPTURED,
) -> Booking:
    """Payment (captured unless AUTHORIZED is asked for), reserved slot and stored booking."""
    now = container.payments.clock()
    intent = await container.payments.create_payment_intent(
        total_cents, booking_id, owner_id, "pm_card_on_file",
        capture_method="manual" if payment_status == PaymentStatus.AUTHORIZED else "automatic",
    )
    tee = now + timedelta(hours=hours_ahead)
    await container.inventory.reserve_slot(COURSE_ID, tee, players)
    booking = Booking(
        id=booking_id,
        course_id=COURSE_ID,
        owner_id=owner_id,
        status=status,
        tee_datetime=tee,
        number_of_players=players,
        add_ons=add_ons or [],
        total_amount_cents=total_cents,
        payment_intent_id=intent.id,
        payment_status=payment_status,
        customer_info=CustomerInfo(name="Alice Customer", email="alice@example.com"),
        reschedules_used=reschedules_used,
        created_at=now,
        updated_at=now,
    )
    return await container.bookings.create(booking)


@pytest_asyncio.fixture
async def booking(container: Container, course: Course) -> Booking:
    """Four players, $200, three days out."""
    return await seed_booking(container)


@pytest_asyncio.fixture
async def client(container: Container) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the container dependency with the test container."""
    app.dependency_overrides[get_container] = lambda: container

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(actor_id: str = OWNER_ID, role: str = "customer", **extra: str) -> dict:
    headers = {"X-Actor-Id": actor_id, "X-Actor-Name": actor_id, "X-Actor-Role": role}
    headers.update(extra)
    return headers
