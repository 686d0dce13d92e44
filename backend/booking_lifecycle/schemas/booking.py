"""
Booking domain model and its status table.

A Booking is immutable: edits produce a new instance through with_changes(),
and status only moves through transition_to(), which enforces
ALLOWED_TRANSITIONS.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from booking_lifecycle.core.errors import InvalidStatusTransition, ValidationError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELED_CUSTOMER = "canceled_customer"
    CANCELED_ADMIN = "canceled_admin"
    NO_SHOW = "no_show"
    DISPUTED = "disputed"


class PaymentStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"
    DISPUTED = "disputed"


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELED_ADMIN,
        BookingStatus.CANCELED_CUSTOMER,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.RESCHEDULED,
        BookingStatus.CHECKED_IN,
        BookingStatus.CANCELED_ADMIN,
        BookingStatus.CANCELED_CUSTOMER,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.RESCHEDULED: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CHECKED_IN,
        BookingStatus.CANCELED_ADMIN,
        BookingStatus.CANCELED_CUSTOMER,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.CHECKED_IN: frozenset({BookingStatus.COMPLETED, BookingStatus.NO_SHOW}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.DISPUTED}),
    BookingStatus.DISPUTED: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.CANCELED_CUSTOMER: frozenset(),
    BookingStatus.CANCELED_ADMIN: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

EDITABLE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.RESCHEDULED})
CANCELLABLE_STATUSES = frozenset({
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.RESCHEDULED,
})
TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class AddOn(BaseModel):
    id: str
    name: str = ""
    price_cents: int = Field(ge=0)  # unit price paid
    quantity: int = Field(default=1, ge=0)

    model_config = {"frozen": True}

    @property
    def subtotal_cents(self) -> int:
        return self.price_cents * self.quantity


class CustomerInfo(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"frozen": True}


class Booking(BaseModel):
    id: str
    course_id: str
    owner_id: str
    status: BookingStatus = BookingStatus.CONFIRMED
    tee_datetime: datetime
    number_of_players: int = Field(ge=1)
    add_ons: list[AddOn] = Field(default_factory=list)
    total_amount_cents: int = Field(ge=0)
    currency: str = "usd"
    payment_intent_id: str
    payment_method_id: str = "pm_card_on_file"
    payment_status: PaymentStatus = PaymentStatus.CAPTURED
    customer_info: CustomerInfo
    reschedules_used: int = 0
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"frozen": True, "from_attributes": True}

    def with_changes(self, **fields: Any) -> "Booking":
        """Copy with non-status fields replaced."""
        if "status" in fields:
            raise ValidationError("Booking status can only change through transition_to()")
        return self.model_copy(update=fields)

    def transition_to(self, target: BookingStatus) -> "Booking":
        # Re-asserting the current status (e.g. rescheduling twice) is a no-op
        if target == self.status:
            return self
        if not can_transition(self.status, target):
            raise InvalidStatusTransition(self.status.value, target.value)
        return self.model_copy(update={"status": target})
