"""
Tests for audit entry validation, search, summaries, CSV export and retention.
"""

import csv
import io
from datetime import timedelta

import pytest
import pytest_asyncio

from booking_lifecycle.core.clock import FrozenClock
from booking_lifecycle.core.errors import AuditWriteError, ErrorCode, ValidationError
from booking_lifecycle.repositories.memory import InMemoryAuditRepository
from booking_lifecycle.schemas.audit import (
    Actor,
    ActorRole,
    AuditAction,
    AuditChange,
    AuditFilter,
    AuditSettings,
    SYSTEM_BOOKING_ID,
)
from booking_lifecycle.services.alerts import AlertDispatcher
from booking_lifecycle.services.audit_service import EXPORT_HEADER, AuditService, detect_changes, format_change

from conftest import NOW, RecordingAlertSink

CUSTOMER = Actor(id="cust_1", name="Carol", role=ActorRole.CUSTOMER, ip_address="198.51.100.7")
STAFF = Actor(id="staff_1", name="Sam", role=ActorRole.STAFF)


class BrokenAuditRepository(InMemoryAuditRepository):
    async def append(self, entry):
        raise ConnectionError("audit store unreachable")


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def sink():
    return RecordingAlertSink()


@pytest_asyncio.fixture
async def audit(clock, sink):
    alerts = AlertDispatcher([sink])
    yield AuditService(
        InMemoryAuditRepository(),
        alerts,
        AuditSettings(retention_days=30, mass_export_threshold=2),
        clock=clock,
    )
    await alerts.stop()


@pytest.mark.asyncio
async def test_entry_records_actor_and_context(audit):
    entry = await audit.log_action(
        "bk_1",
        AuditAction.BOOKING_UPDATED,
        CUSTOMER,
        changes=[AuditChange(field="number_of_players", old_value=4, new_value=2, field_type="number")],
        metadata={"source": "web"},
    )
    assert entry.id.startswith("audit_")
    assert entry.timestamp == NOW
    assert entry.performed_by.name == "Carol"
    assert entry.performed_by.role == ActorRole.CUSTOMER
    assert entry.ip_address == "198.51.100.7"

    history = await audit.get_booking_audit_history("bk_1")
    assert [e.id for e in history] == [entry.id]


@pytest.mark.asyncio
async def test_cancellation_requires_reason(audit):
    with pytest.raises(ValidationError) as exc_info:
        await audit.log_action("bk_1", AuditAction.BOOKING_CANCELED, STAFF, reason="   ")
    assert exc_info.value.code == ErrorCode.REASON_REQUIRED
    assert await audit.get_booking_audit_history("bk_1") == []


@pytest.mark.asyncio
async def test_required_metadata_enforced(audit):
    with pytest.raises(ValidationError) as exc_info:
        await audit.log_action("bk_1", AuditAction.PAYMENT_REFUNDED, STAFF, metadata={"refund_id": "re_1"})
    assert exc_info.value.code == ErrorCode.METADATA_INCOMPLETE
    assert exc_info.value.details["missing"] == ["amount_cents"]


@pytest.mark.asyncio
async def test_append_is_idempotent_by_id(audit):
    entry = audit.build_entry("bk_1", AuditAction.NOTES_ADDED, STAFF, notes="Prefers early tee times")
    await audit.append(entry)
    await audit.append(entry)
    assert len(await audit.get_booking_audit_history("bk_1")) == 1


@pytest.mark.asyncio
async def test_storage_failure_is_retryable(clock):
    service = AuditService(BrokenAuditRepository(), AlertDispatcher([]), clock=clock)
    with pytest.raises(AuditWriteError) as exc_info:
        await service.log_action("bk_1", AuditAction.NOTES_ADDED, STAFF)
    assert exc_info.value.retryable
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_critical_action_raises_alert(audit, sink):
    await audit.log_action(
        "bk_1", AuditAction.BOOKING_CANCELED, STAFF,
        metadata={"cancellation_reason": "weather"}, reason="Lightning storm",
    )
    await audit.alerts.drain()
    assert len(sink.alerts) == 1
    assert sink.alerts[0].alert_type == "critical_action"
    assert sink.alerts[0].booking_id == "bk_1"


@pytest.mark.asyncio
async def test_search_filters(audit, clock):
    await audit.log_action("bk_1", AuditAction.BOOKING_UPDATED, CUSTOMER, changes=[
        AuditChange(field="add_ons", old_value=[], new_value=["cart"], field_type="array"),
    ])
    clock.advance(hours=1)
    await audit.log_action("bk_2", AuditAction.CHECK_IN, STAFF)
    clock.advance(hours=1)
    await audit.log_action(
        "bk_1", AuditAction.STATUS_CHANGED, STAFF,
        metadata={"from_status": "confirmed", "to_status": "no_show"},
    )

    by_booking = await audit.search_audit_entries(AuditFilter(booking_id="bk_1"))
    assert [e.action for e in by_booking] == [AuditAction.STATUS_CHANGED, AuditAction.BOOKING_UPDATED]

    by_role = await audit.search_audit_entries(AuditFilter(role=[ActorRole.STAFF]))
    assert len(by_role) == 2

    by_field = await audit.search_audit_entries(AuditFilter(field="add_ons"))
    assert [e.booking_id for e in by_field] == ["bk_1"]

    window = await audit.search_audit_entries(
        AuditFilter(date_from=NOW + timedelta(minutes=30), date_to=NOW + timedelta(minutes=90))
    )
    assert [e.action for e in window] == [AuditAction.CHECK_IN]

    limited = await audit.search_audit_entries(AuditFilter(), limit=1)
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_summary_counts(audit):
    await audit.log_action("bk_1", AuditAction.BOOKING_UPDATED, CUSTOMER)
    await audit.log_action("bk_1", AuditAction.BOOKING_UPDATED, CUSTOMER)
    await audit.log_action("bk_1", AuditAction.BOOKING_CANCELED, STAFF, reason="Customer called")

    summary = await audit.get_audit_summary(NOW - timedelta(days=1), NOW + timedelta(days=1))
    assert summary.total_actions == 3
    assert summary.actions_by_type == {"booking_updated": 2, "booking_canceled": 1}
    assert summary.top_performers[0].id == "cust_1"
    assert summary.top_performers[0].count == 2
    assert [e.action for e in summary.critical_actions] == [AuditAction.BOOKING_CANCELED]


@pytest.mark.asyncio
async def test_export_is_itself_audited(audit, sink):
    await audit.log_action(
        "bk_1", AuditAction.BOOKING_UPDATED, CUSTOMER,
        changes=[AuditChange(field="number_of_players", old_value=4, new_value=3, field_type="number")],
    )
    await audit.log_action("bk_1", AuditAction.NOTES_ADDED, STAFF, notes='Said "see you soon", bring cart')

    export = await audit.export_audit_data(AuditFilter(booking_id="bk_1"), STAFF)
    assert export.record_count == 2

    rows = list(csv.reader(io.StringIO(export.content)))
    assert rows[0] == EXPORT_HEADER
    assert len(rows) == 3
    by_action = {r[2]: r for r in rows[1:]}
    assert by_action["notes_added"][8] == 'Said "see you soon", bring cart'
    assert '"field": "number_of_players"' in by_action["booking_updated"][6]
    assert all(line.startswith('"') for line in export.content.splitlines())

    exported = await audit.search_audit_entries(AuditFilter(action=[AuditAction.DATA_EXPORTED]))
    assert len(exported) == 1
    assert exported[0].id == export.audit_entry_id
    assert exported[0].booking_id == SYSTEM_BOOKING_ID
    assert exported[0].metadata["record_count"] == 2
    assert exported[0].metadata["filter"] == {"booking_id": "bk_1"}


@pytest.mark.asyncio
async def test_mass_export_alert(audit, sink):
    for i in range(3):
        await audit.log_action(f"bk_{i}", AuditAction.BOOKING_UPDATED, CUSTOMER)
    await audit.export_audit_data(AuditFilter(action=[AuditAction.BOOKING_UPDATED]), STAFF)
    await audit.alerts.drain()
    assert [a.alert_type for a in sink.alerts] == ["mass_data_export"]


@pytest.mark.asyncio
async def test_cleanup_purges_old_entries_silently(audit, clock):
    await audit.log_action("bk_old", AuditAction.BOOKING_UPDATED, CUSTOMER)
    clock.advance(days=31)
    await audit.log_action("bk_new", AuditAction.BOOKING_UPDATED, CUSTOMER)

    removed = await audit.cleanup_old_entries()
    assert removed == 1
    remaining = await audit.search_audit_entries(AuditFilter())
    assert [e.booking_id for e in remaining] == ["bk_new"]


@pytest.mark.asyncio
async def test_cleanup_can_record_purge(clock, sink):
    service = AuditService(
        InMemoryAuditRepository(),
        AlertDispatcher([sink]),
        AuditSettings(retention_days=30, record_purges=True),
        clock=clock,
    )
    await service.log_action("bk_old", AuditAction.BOOKING_UPDATED, CUSTOMER)
    clock.advance(days=31)

    assert await service.cleanup_old_entries(STAFF) == 1
    purges = await service.search_audit_entries(AuditFilter(action=[AuditAction.DATA_DELETED]))
    assert purges[0].metadata["removed"] == 1
    assert "30 days" in purges[0].reason
    await service.alerts.stop()


def test_detect_changes_and_formatting():
    changes = detect_changes(
        {"number_of_players": 4, "tee_datetime": "2026-06-04T08:00:00+00:00", "add_ons": []},
        {"number_of_players": 2, "tee_datetime": "2026-06-05T09:00:00+00:00", "add_ons": []},
    )
    assert [c.field for c in changes] == ["number_of_players", "tee_datetime"]
    assert changes[0].field_type == "number"
    assert changes[1].field_type == "date"
    assert format_change(changes[0]) == "number_of_players: 4 -> 2"
