"""
Storage interfaces for dependency inversion.

The backing store only needs single-record create/read/update; nothing here
assumes multi-record transactions. Implementations:
- memory.py: in-process dictionaries (development and tests)
- sql.py: SQLAlchemy async (bookings, payments, audit entries)
- redis_store.py: Redis (rate-limit counters, idempotency keys)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from booking_lifecycle.schemas.audit import AuditEntry, AuditFilter
from booking_lifecycle.schemas.booking import Booking
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.payment import Dispute, PaymentIntent, Refund
from booking_lifecycle.schemas.policy import CancellationPolicy


class BookingRepository(ABC):
    @abstractmethod
    async def get(self, booking_id: str) -> Optional[Booking]:
        pass

    @abstractmethod
    async def create(self, booking: Booking) -> Booking:
        pass

    @abstractmethod
    async def save(self, booking: Booking, expected_version: int) -> Booking:
        """
        Persist booking if the stored version still equals expected_version.

        Returns the stored booking with version = expected_version + 1.
        Raises ConcurrentModification when another writer got there first.
        """
        pass


class CourseRepository(ABC):
    @abstractmethod
    async def get_course(self, course_id: str) -> Optional[Course]:
        pass

    @abstractmethod
    async def save_course(self, course: Course) -> Course:
        pass

    @abstractmethod
    async def get_edit_rules(self, course_id: str) -> CourseEditRules:
        """Course rules, or the configured defaults."""
        pass

    @abstractmethod
    async def set_edit_rules(self, course_id: str, rules: CourseEditRules) -> None:
        pass

    @abstractmethod
    async def get_cancellation_policies(self, course_id: str) -> list[CancellationPolicy]:
        """Course tiers, or the default tiers."""
        pass

    @abstractmethod
    async def set_cancellation_policies(self, course_id: str, policies: list[CancellationPolicy]) -> None:
        pass


class PaymentRepository(ABC):
    @abstractmethod
    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    async def save_intent(self, intent: PaymentIntent) -> PaymentIntent:
        pass

    @abstractmethod
    async def list_intents_for_booking(self, booking_id: str) -> list[PaymentIntent]:
        pass

    @abstractmethod
    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def save_refund(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def list_refunds(self, intent_id: str) -> list[Refund]:
        pass

    @abstractmethod
    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        pass

    @abstractmethod
    async def save_dispute(self, dispute: Dispute) -> Dispute:
        pass

    @abstractmethod
    async def list_disputes(self, intent_id: str) -> list[Dispute]:
        pass


class AuditRepository(ABC):
    @abstractmethod
    async def append(self, entry: AuditEntry) -> bool:
        """Store entry. Returns False (and stores nothing) if its id already exists."""
        pass

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[AuditEntry]:
        pass

    @abstractmethod
    async def search(self, audit_filter: AuditFilter, limit: int) -> list[AuditEntry]:
        """Matching entries, newest first, at most limit."""
        pass

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        pass


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    reset_at: datetime
    retry_after_seconds: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimitStore(ABC):
    """Fixed-window counters. hit() must check and increment atomically."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        pass

    @abstractmethod
    async def peek(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        pass


class IdempotencyState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class IdempotencyRecord:
    key: str
    fingerprint: str
    state: IdempotencyState
    result: Optional[dict[str, Any]] = None


class IdempotencyStore(ABC):
    @abstractmethod
    async def claim(self, key: str, fingerprint: str, ttl_seconds: int) -> Optional[IdempotencyRecord]:
        """
        Claim key for a new execution.

        Returns None if the caller now owns the key, otherwise the existing record.
        """
        pass

    @abstractmethod
    async def complete(self, key: str, fingerprint: str, result: dict[str, Any], ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def release(self, key: str) -> None:
        """Drop an in-progress claim so the request can be retried."""
        pass


class InventoryStore(ABC):
    """Tee-time slot inventory owned by an external system."""

    @abstractmethod
    async def check_capacity(self, course_id: str, tee_datetime: datetime, players: int) -> bool:
        pass

    @abstractmethod
    async def reserve_slot(self, course_id: str, tee_datetime: datetime, players: int) -> bool:
        pass

    @abstractmethod
    async def release_slot(self, course_id: str, tee_datetime: datetime, players: int) -> None:
        """Must be safe on stale or already released reservations."""
        pass
