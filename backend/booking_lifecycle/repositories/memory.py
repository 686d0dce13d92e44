"""
In-memory repositories.

Each store guards its dictionaries with an asyncio.Lock so check-and-set
operations (optimistic save, rate-limit hit, idempotency claim, slot reserve)
stay atomic across concurrent tasks in one event loop.
"""

import asyncio
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

from booking_lifecycle.core.clock import ensure_utc
from booking_lifecycle.core.errors import ConcurrentModification, ValidationError
from booking_lifecycle.repositories.interfaces import (
    AuditRepository,
    BookingRepository,
    CourseRepository,
    IdempotencyRecord,
    IdempotencyState,
    IdempotencyStore,
    InventoryStore,
    PaymentRepository,
    RateLimitDecision,
    RateLimitStore,
)
from booking_lifecycle.schemas.audit import AuditEntry, AuditFilter
from booking_lifecycle.schemas.booking import Booking
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.payment import Dispute, PaymentIntent, Refund
from booking_lifecycle.schemas.policy import (
    DEFAULT_CANCELLATION_POLICIES,
    CancellationPolicy,
    validate_policy_tiers,
)


class InMemoryBookingRepository(BookingRepository):
    def __init__(self):
        self._bookings: dict[str, Booking] = {}
        self._lock = asyncio.Lock()

    async def get(self, booking_id: str) -> Optional[Booking]:
        return self._bookings.get(booking_id)

    async def create(self, booking: Booking) -> Booking:
        async with self._lock:
            if booking.id in self._bookings:
                raise ValidationError(f"Booking {booking.id} already exists")
            self._bookings[booking.id] = booking
        return booking

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        async with self._lock:
            current = self._bookings.get(booking.id)
            if current is None or current.version != expected_version:
                raise ConcurrentModification(
                    details={"booking_id": booking.id, "expected_version": expected_version}
                )
            stored = booking.model_copy(update={"version": expected_version + 1})
            self._bookings[booking.id] = stored
        return stored


class InMemoryCourseRepository(CourseRepository):
    def __init__(self, default_rules: Optional[CourseEditRules] = None):
        self._courses: dict[str, Course] = {}
        self._rules: dict[str, CourseEditRules] = {}
        self._policies: dict[str, list[CancellationPolicy]] = {}
        self._default_rules = default_rules or CourseEditRules()

    async def get_course(self, course_id: str) -> Optional[Course]:
        return self._courses.get(course_id)

    async def save_course(self, course: Course) -> Course:
        self._courses[course.id] = course
        return course

    async def get_edit_rules(self, course_id: str) -> CourseEditRules:
        return self._rules.get(course_id, self._default_rules)

    async def set_edit_rules(self, course_id: str, rules: CourseEditRules) -> None:
        self._rules[course_id] = rules

    async def get_cancellation_policies(self, course_id: str) -> list[CancellationPolicy]:
        return list(self._policies.get(course_id, DEFAULT_CANCELLATION_POLICIES))

    async def set_cancellation_policies(self, course_id: str, policies: list[CancellationPolicy]) -> None:
        self._policies[course_id] = validate_policy_tiers(policies)


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self):
        self._intents: dict[str, PaymentIntent] = {}
        self._refunds: dict[str, Refund] = {}
        self._disputes: dict[str, Dispute] = {}

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        intent = self._intents.get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def save_intent(self, intent: PaymentIntent) -> PaymentIntent:
        self._intents[intent.id] = intent.model_copy(deep=True)
        return intent

    async def list_intents_for_booking(self, booking_id: str) -> list[PaymentIntent]:
        return [i.model_copy(deep=True) for i in self._intents.values() if i.booking_id == booking_id]

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        refund = self._refunds.get(refund_id)
        return refund.model_copy(deep=True) if refund else None

    async def save_refund(self, refund: Refund) -> Refund:
        self._refunds[refund.id] = refund.model_copy(deep=True)
        return refund

    async def list_refunds(self, intent_id: str) -> list[Refund]:
        return [r.model_copy(deep=True) for r in self._refunds.values() if r.payment_intent_id == intent_id]

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        dispute = self._disputes.get(dispute_id)
        return dispute.model_copy(deep=True) if dispute else None

    async def save_dispute(self, dispute: Dispute) -> Dispute:
        self._disputes[dispute.id] = dispute.model_copy(deep=True)
        return dispute

    async def list_disputes(self, intent_id: str) -> list[Dispute]:
        return [d.model_copy(deep=True) for d in self._disputes.values() if d.payment_intent_id == intent_id]


class InMemoryAuditRepository(AuditRepository):
    def __init__(self):
        self._entries: dict[str, AuditEntry] = {}
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditEntry) -> bool:
        async with self._lock:
            if entry.id in self._entries:
                return False
            self._entries[entry.id] = entry
        return True

    async def get(self, entry_id: str) -> Optional[AuditEntry]:
        return self._entries.get(entry_id)

    async def search(self, audit_filter: AuditFilter, limit: int) -> list[AuditEntry]:
        matches = [e for e in self._entries.values() if audit_filter.matches(e)]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[:limit]

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [entry_id for entry_id, e in self._entries.items() if e.timestamp < cutoff]
            for entry_id in stale:
                del self._entries[entry_id]
        return len(stale)


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._windows: dict[str, tuple[int, datetime]] = {}  # key -> (count, reset_at)
        self._lock = asyncio.Lock()

    def _current(self, key: str, window_seconds: int, now: datetime) -> tuple[int, datetime]:
        count, reset_at = self._windows.get(key, (0, now + timedelta(seconds=window_seconds)))
        if now >= reset_at:
            return 0, now + timedelta(seconds=window_seconds)
        return count, reset_at

    @staticmethod
    def _decision(allowed: bool, count: int, limit: int, reset_at: datetime, now: datetime) -> RateLimitDecision:
        retry_after = 0 if allowed else max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(allowed, count, limit, reset_at, retry_after)

    async def hit(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        async with self._lock:
            count, reset_at = self._current(key, window_seconds, now)
            if count >= limit:
                return self._decision(False, count, limit, reset_at, now)
            self._windows[key] = (count + 1, reset_at)
            return self._decision(True, count + 1, limit, reset_at, now)

    async def peek(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        async with self._lock:
            count, reset_at = self._current(key, window_seconds, now)
        return self._decision(count < limit, count, limit, reset_at, now)


class InMemoryIdempotencyStore(IdempotencyStore):
    """Keys never expire here; the TTL only matters for shared stores."""

    def __init__(self):
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def claim(self, key: str, fingerprint: str, ttl_seconds: int) -> Optional[IdempotencyRecord]:
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing
            self._records[key] = IdempotencyRecord(key, fingerprint, IdempotencyState.IN_PROGRESS)
        return None

    async def complete(self, key: str, fingerprint: str, result: dict[str, Any], ttl_seconds: int) -> None:
        async with self._lock:
            self._records[key] = IdempotencyRecord(key, fingerprint, IdempotencyState.COMPLETED, result)

    async def release(self, key: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.state == IdempotencyState.IN_PROGRESS:
                del self._records[key]


class InMemoryInventory(InventoryStore):
    """Player capacity per (course, tee time) slot."""

    def __init__(self, default_capacity: int = 4):
        self.default_capacity = default_capacity
        self._capacity: dict[tuple[str, datetime], int] = {}
        self._reserved: dict[tuple[str, datetime], int] = defaultdict(int)
        self._lock = asyncio.Lock()

    @staticmethod
    def _slot(course_id: str, tee_datetime: datetime) -> tuple[str, datetime]:
        return course_id, ensure_utc(tee_datetime)

    def set_capacity(self, course_id: str, tee_datetime: datetime, players: int) -> None:
        self._capacity[self._slot(course_id, tee_datetime)] = players

    def reserved(self, course_id: str, tee_datetime: datetime) -> int:
        return self._reserved.get(self._slot(course_id, tee_datetime), 0)

    def _available(self, slot: tuple[str, datetime]) -> int:
        return self._capacity.get(slot, self.default_capacity) - self._reserved.get(slot, 0)

    async def check_capacity(self, course_id: str, tee_datetime: datetime, players: int) -> bool:
        return self._available(self._slot(course_id, tee_datetime)) >= players

    async def reserve_slot(self, course_id: str, tee_datetime: datetime, players: int) -> bool:
        slot = self._slot(course_id, tee_datetime)
        async with self._lock:
            if self._available(slot) < players:
                return False
            self._reserved[slot] += players
        return True

    async def release_slot(self, course_id: str, tee_datetime: datetime, players: int) -> None:
        slot = self._slot(course_id, tee_datetime)
        async with self._lock:
            self._reserved[slot] = max(0, self._reserved.get(slot, 0) - players)
