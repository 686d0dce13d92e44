"""
SQL repositories against in-memory SQLite (aiosqlite).

JSONB columns fall back to JSON on SQLite; timestamps come back naive and are
normalised to UTC by the repositories.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from booking_lifecycle.core.clock import FrozenClock
from booking_lifecycle.core.errors import ConcurrentModification, ValidationError
from booking_lifecycle.db.session import create_session_factory, create_tables
from booking_lifecycle.repositories.sql import SqlAuditRepository, SqlBookingRepository, SqlPaymentRepository
from booking_lifecycle.schemas.audit import (
    ActorRole,
    AuditAction,
    AuditChange,
    AuditEntry,
    AuditFilter,
    PerformedBy,
)
from booking_lifecycle.schemas.booking import AddOn, Booking, BookingStatus, CustomerInfo
from booking_lifecycle.schemas.payment import PaymentIntentStatus, PaymentPolicies, RefundStatus
from booking_lifecycle.services.interfaces import SimulatedPaymentGateway
from booking_lifecycle.services.payment_manager import PaymentManager

from conftest import COURSE_ID, NOW, OWNER_ID


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


def _booking(**overrides) -> Booking:
    fields = dict(
        id="bk_sql",
        course_id=COURSE_ID,
        owner_id=OWNER_ID,
        tee_datetime=NOW + timedelta(days=3),
        number_of_players=4,
        add_ons=[AddOn(id="cart", name="Golf cart", price_cents=2500, quantity=2)],
        total_amount_cents=25000,
        payment_intent_id="pi_1",
        customer_info=CustomerInfo(name="Alice Customer", email="alice@example.com"),
    )
    fields.update(overrides)
    return Booking(**fields)


def _entry(entry_id: str, booking_id: str, action: AuditAction, minutes: int = 0, **kwargs) -> AuditEntry:
    return AuditEntry(
        id=entry_id,
        booking_id=booking_id,
        action=action,
        performed_by=PerformedBy(id="staff_bob", name="Bob Staff", role=ActorRole.STAFF),
        timestamp=NOW + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_booking_round_trip(session_factory):
    repo = SqlBookingRepository(session_factory)
    created = await repo.create(_booking())

    loaded = await repo.get("bk_sql")
    assert loaded.tee_datetime == NOW + timedelta(days=3)
    assert loaded.add_ons[0].quantity == 2
    assert loaded.customer_info.email == "alice@example.com"
    assert loaded.version == created.version == 1
    assert await repo.get("bk_missing") is None


@pytest.mark.asyncio
async def test_duplicate_booking_rejected(session_factory):
    repo = SqlBookingRepository(session_factory)
    await repo.create(_booking())
    with pytest.raises(ValidationError):
        await repo.create(_booking())


@pytest.mark.asyncio
async def test_save_checks_version(session_factory):
    repo = SqlBookingRepository(session_factory)
    original = await repo.create(_booking())

    saved = await repo.save(
        original.with_changes(number_of_players=3).transition_to(BookingStatus.RESCHEDULED),
        expected_version=1,
    )
    assert saved.version == 2
    assert saved.status == BookingStatus.RESCHEDULED
    assert saved.number_of_players == 3

    # A writer still holding version 1 loses
    with pytest.raises(ConcurrentModification):
        await repo.save(original.with_changes(number_of_players=2), expected_version=1)
    assert (await repo.get("bk_sql")).number_of_players == 3


@pytest.mark.asyncio
async def test_payment_manager_on_sql(session_factory):
    manager = PaymentManager(
        SqlPaymentRepository(session_factory),
        SimulatedPaymentGateway(),
        PaymentPolicies(gateway_retry_backoff_seconds=0),
        clock=FrozenClock(NOW),
    )
    intent = await manager.create_payment_intent(
        20000, "bk_sql", OWNER_ID, "pm_ok", metadata={"source": "test"}, capture_method="automatic"
    )
    stored = await manager.get_payment_intent(intent.id)
    assert stored.status == PaymentIntentStatus.SUCCEEDED
    assert stored.metadata == {"source": "test"}
    assert stored.captured_at == NOW

    refund = await manager.create_refund(intent.id, 5000)
    settled = await manager.wait_for_refund(refund.id, timeout=1)
    assert settled.status == RefundStatus.SUCCEEDED

    dispute = await manager.open_dispute(intent.id, amount_cents=1000)
    assert (await manager.get_dispute(dispute.id)).evidence_due_by == NOW + timedelta(days=7)

    summary = await manager.get_payment_summary("bk_sql")
    assert summary.net_amount_cents == 15000
    assert summary.active_disputes == 1
    await manager.shutdown()


@pytest.mark.asyncio
async def test_audit_append_is_idempotent(session_factory):
    repo = SqlAuditRepository(session_factory)
    entry = _entry(
        "audit_1", "bk_sql", AuditAction.BOOKING_UPDATED,
        changes=[AuditChange(field="number_of_players", old_value=4, new_value=3, field_type="number")],
        metadata={"idempotency_key": "k1"},
    )
    assert await repo.append(entry)
    assert not await repo.append(entry)

    loaded = await repo.get("audit_1")
    assert loaded.changes[0].new_value == 3
    assert loaded.metadata == {"idempotency_key": "k1"}
    assert loaded.timestamp == NOW


@pytest.mark.asyncio
async def test_audit_search_and_purge(session_factory):
    repo = SqlAuditRepository(session_factory)
    await repo.append(_entry("a1", "bk_1", AuditAction.BOOKING_UPDATED, minutes=0, changes=[
        AuditChange(field="add_ons", old_value=[], new_value=[{"id": "cart"}], field_type="array"),
    ]))
    await repo.append(_entry("a2", "bk_1", AuditAction.CHECK_IN, minutes=10))
    await repo.append(_entry("a3", "bk_2", AuditAction.BOOKING_CANCELED, minutes=20, reason="Rain"))

    newest_first = await repo.search(AuditFilter(booking_id="bk_1"), limit=10)
    assert [e.id for e in newest_first] == ["a2", "a1"]

    by_action = await repo.search(AuditFilter(action=[AuditAction.BOOKING_CANCELED]), limit=10)
    assert [e.reason for e in by_action] == ["Rain"]

    by_field = await repo.search(AuditFilter(field="add_ons"), limit=10)
    assert [e.id for e in by_field] == ["a1"]

    window = await repo.search(
        AuditFilter(date_from=NOW + timedelta(minutes=5), date_to=NOW + timedelta(minutes=15)), limit=10
    )
    assert [e.id for e in window] == ["a2"]

    assert await repo.delete_older_than(NOW + timedelta(minutes=15)) == 2
    assert [e.id for e in await repo.search(AuditFilter(), limit=10)] == ["a3"]
