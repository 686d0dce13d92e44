"""
SQLAlchemy async repositories.

Every method opens its own short session and commits a single record, so
the contract matches the single-record store the services are written
against. Optimistic locking for bookings follows the same pattern as seat
reservation elsewhere in this codebase:

  UPDATE bookings SET ..., version = version + 1
  WHERE id = :id AND version = :expected_version

rowcount == 0 means another writer won, which surfaces as
ConcurrentModification for the caller to compensate and retry.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_lifecycle.core.clock import ensure_utc
from booking_lifecycle.core.errors import ConcurrentModification, ValidationError
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.models.audit import AuditEntryRecord
from booking_lifecycle.models.booking import BookingRecord
from booking_lifecycle.models.payment import DisputeRecord, PaymentIntentRecord, RefundRecord
from booking_lifecycle.repositories.interfaces import (
    AuditRepository,
    BookingRepository,
    PaymentRepository,
)
from booking_lifecycle.schemas.audit import AuditChange, AuditEntry, AuditFilter, PerformedBy
from booking_lifecycle.schemas.booking import AddOn, Booking, CustomerInfo
from booking_lifecycle.schemas.payment import Dispute, DisputeEvidence, PaymentIntent, Refund

logger = get_logger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class SqlBookingRepository(BookingRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_domain(row: BookingRecord) -> Booking:
        return Booking(
            id=row.id,
            course_id=row.course_id,
            owner_id=row.owner_id,
            status=row.status,
            tee_datetime=ensure_utc(row.tee_datetime),
            number_of_players=row.number_of_players,
            add_ons=[AddOn(**a) for a in row.add_ons or []],
            total_amount_cents=row.total_amount_cents,
            currency=row.currency,
            payment_intent_id=row.payment_intent_id,
            payment_method_id=row.payment_method_id,
            payment_status=row.payment_status,
            customer_info=CustomerInfo(**row.customer_info),
            reschedules_used=row.reschedules_used,
            version=row.version,
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at),
        )

    @staticmethod
    def _values(booking: Booking) -> dict:
        return {
            "course_id": booking.course_id,
            "owner_id": booking.owner_id,
            "status": booking.status.value,
            "tee_datetime": booking.tee_datetime,
            "number_of_players": booking.number_of_players,
            "add_ons": [a.model_dump() for a in booking.add_ons],
            "total_amount_cents": booking.total_amount_cents,
            "currency": booking.currency,
            "payment_intent_id": booking.payment_intent_id,
            "payment_method_id": booking.payment_method_id,
            "payment_status": booking.payment_status.value,
            "customer_info": booking.customer_info.model_dump(),
            "reschedules_used": booking.reschedules_used,
        }

    async def get(self, booking_id: str) -> Optional[Booking]:
        async with self.session_factory() as session:
            row = await session.get(BookingRecord, booking_id)
            return self._to_domain(row) if row else None

    async def create(self, booking: Booking) -> Booking:
        async with self.session_factory() as session:
            row = BookingRecord(id=booking.id, version=booking.version, **self._values(booking))
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"Booking {booking.id} already exists") from e
            await session.refresh(row)
            return self._to_domain(row)

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        async with self.session_factory() as session:
            result = await session.execute(
                update(BookingRecord)
                .where(
                    BookingRecord.id == booking.id,
                    BookingRecord.version == expected_version,
                )
                .values(**self._values(booking), version=BookingRecord.version + 1)
            )
            if result.rowcount == 0:
                await session.rollback()
                logger.info(
                    "booking_version_conflict",
                    booking_id=booking.id,
                    expected_version=expected_version,
                )
                raise ConcurrentModification(
                    details={"booking_id": booking.id, "expected_version": expected_version}
                )
            await session.commit()
            row = await session.get(BookingRecord, booking.id, populate_existing=True)
            return self._to_domain(row)


class SqlPaymentRepository(PaymentRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _intent(row: PaymentIntentRecord) -> PaymentIntent:
        return PaymentIntent(
            id=row.id,
            amount_cents=row.amount_cents,
            amount_captured_cents=row.amount_captured_cents,
            currency=row.currency,
            status=row.status,
            payment_method_id=row.payment_method_id,
            booking_id=row.booking_id,
            customer_id=row.customer_id,
            description=row.description,
            metadata=row.metadata_ or {},
            gateway_reference=row.gateway_reference,
            last_error=row.last_error,
            created_at=ensure_utc(row.created_at),
            authorized_at=_utc(row.authorized_at),
            captured_at=_utc(row.captured_at),
            canceled_at=_utc(row.canceled_at),
            authorization_expires_at=_utc(row.authorization_expires_at),
        )

    @staticmethod
    def _refund(row: RefundRecord) -> Refund:
        return Refund(
            id=row.id,
            payment_intent_id=row.payment_intent_id,
            amount_cents=row.amount_cents,
            reason=row.reason,
            status=row.status,
            description=row.description,
            metadata=row.metadata_ or {},
            created_at=ensure_utc(row.created_at),
            processed_at=_utc(row.processed_at),
            failed_at=_utc(row.failed_at),
            failure_reason=row.failure_reason,
        )

    @staticmethod
    def _dispute(row: DisputeRecord) -> Dispute:
        return Dispute(
            id=row.id,
            payment_intent_id=row.payment_intent_id,
            amount_cents=row.amount_cents,
            currency=row.currency,
            reason=row.reason,
            status=row.status,
            evidence=DisputeEvidence(**row.evidence) if row.evidence else None,
            created_at=ensure_utc(row.created_at),
            evidence_due_by=ensure_utc(row.evidence_due_by),
            responded_at=_utc(row.responded_at),
            resolved_at=_utc(row.resolved_at),
        )

    async def _upsert(self, model, values: dict) -> None:
        async with self.session_factory() as session:
            row = await session.get(model, values["id"])
            if row is None:
                session.add(model(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await session.commit()

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        async with self.session_factory() as session:
            row = await session.get(PaymentIntentRecord, intent_id)
            return self._intent(row) if row else None

    async def save_intent(self, intent: PaymentIntent) -> PaymentIntent:
        values = intent.model_dump(exclude={"metadata"})
        values["status"] = intent.status.value
        values["metadata_"] = dict(intent.metadata)
        await self._upsert(PaymentIntentRecord, values)
        return intent

    async def list_intents_for_booking(self, booking_id: str) -> list[PaymentIntent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord)
                .where(PaymentIntentRecord.booking_id == booking_id)
                .order_by(PaymentIntentRecord.created_at)
            )
            return [self._intent(row) for row in result.scalars().all()]

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        async with self.session_factory() as session:
            row = await session.get(RefundRecord, refund_id)
            return self._refund(row) if row else None

    async def save_refund(self, refund: Refund) -> Refund:
        values = refund.model_dump(exclude={"metadata"})
        values["reason"] = refund.reason.value
        values["status"] = refund.status.value
        values["metadata_"] = dict(refund.metadata)
        await self._upsert(RefundRecord, values)
        return refund

    async def list_refunds(self, intent_id: str) -> list[Refund]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundRecord)
                .where(RefundRecord.payment_intent_id == intent_id)
                .order_by(RefundRecord.created_at)
            )
            return [self._refund(row) for row in result.scalars().all()]

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        async with self.session_factory() as session:
            row = await session.get(DisputeRecord, dispute_id)
            return self._dispute(row) if row else None

    async def save_dispute(self, dispute: Dispute) -> Dispute:
        values = dispute.model_dump(exclude={"evidence"})
        values["reason"] = dispute.reason.value
        values["status"] = dispute.status.value
        values["evidence"] = dispute.evidence.model_dump() if dispute.evidence else None
        await self._upsert(DisputeRecord, values)
        return dispute

    async def list_disputes(self, intent_id: str) -> list[Dispute]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DisputeRecord)
                .where(DisputeRecord.payment_intent_id == intent_id)
                .order_by(DisputeRecord.created_at)
            )
            return [self._dispute(row) for row in result.scalars().all()]


class SqlAuditRepository(AuditRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_domain(row: AuditEntryRecord) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            booking_id=row.booking_id,
            action=row.action,
            performed_by=PerformedBy(
                id=row.actor_id, name=row.actor_name, role=row.actor_role, email=row.actor_email
            ),
            timestamp=ensure_utc(row.timestamp),
            changes=[AuditChange(**c) for c in row.changes or []],
            metadata=row.metadata_ or {},
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            reason=row.reason,
            notes=row.notes,
        )

    async def append(self, entry: AuditEntry) -> bool:
        async with self.session_factory() as session:
            if await session.get(AuditEntryRecord, entry.id) is not None:
                return False
            session.add(AuditEntryRecord(
                id=entry.id,
                booking_id=entry.booking_id,
                action=entry.action.value,
                actor_id=entry.performed_by.id,
                actor_name=entry.performed_by.name,
                actor_role=entry.performed_by.role.value,
                actor_email=entry.performed_by.email,
                timestamp=entry.timestamp,
                changes=[c.model_dump(mode="json") for c in entry.changes],
                metadata_=entry.model_dump(mode="json")["metadata"],
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                reason=entry.reason,
                notes=entry.notes,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent append of the same id; the first one wins
                await session.rollback()
                return False
        return True

    async def get(self, entry_id: str) -> Optional[AuditEntry]:
        async with self.session_factory() as session:
            row = await session.get(AuditEntryRecord, entry_id)
            return self._to_domain(row) if row else None

    async def search(self, audit_filter: AuditFilter, limit: int) -> list[AuditEntry]:
        query = select(AuditEntryRecord)
        if audit_filter.booking_id:
            query = query.where(AuditEntryRecord.booking_id == audit_filter.booking_id)
        if audit_filter.performed_by:
            query = query.where(AuditEntryRecord.actor_id == audit_filter.performed_by)
        if audit_filter.action:
            query = query.where(AuditEntryRecord.action.in_([a.value for a in audit_filter.action]))
        if audit_filter.role:
            query = query.where(AuditEntryRecord.actor_role.in_([r.value for r in audit_filter.role]))
        if audit_filter.date_from:
            query = query.where(AuditEntryRecord.timestamp >= audit_filter.date_from)
        if audit_filter.date_to:
            query = query.where(AuditEntryRecord.timestamp <= audit_filter.date_to)
        query = query.order_by(AuditEntryRecord.timestamp.desc())
        # Changed-field filtering happens on the decoded JSON, so only cap in SQL without it
        if not audit_filter.field:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            entries = [self._to_domain(row) for row in result.scalars().all()]
        if audit_filter.field:
            entries = [e for e in entries if audit_filter.matches(e)]
        return entries[:limit]

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(AuditEntryRecord).where(AuditEntryRecord.timestamp < cutoff)
            )
            await session.commit()
            return result.rowcount or 0
