"""
Request/response schemas for edits, transfers, cancellations and disputes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from booking_lifecycle.schemas.audit import AuditChange
from booking_lifecycle.schemas.booking import Booking, BookingStatus, CustomerInfo
from booking_lifecycle.schemas.payment import Dispute, DisputeOutcomeType, DisputeReason, RefundStatus
from booking_lifecycle.schemas.policy import RefundCalculation


class CustomerInfoUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


class BookingChanges(BaseModel):
    """Proposed change set. Unset fields are left as they are."""

    tee_datetime: Optional[datetime] = None
    number_of_players: Optional[int] = Field(default=None, ge=1)
    add_ons: Optional[dict[str, int]] = None  # add-on id -> desired quantity
    customer_info: Optional[CustomerInfoUpdate] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class EditValidationResult(BaseModel):
    is_valid: bool
    reasons: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    retry_after_seconds: Optional[int] = None


class PriceLineItem(BaseModel):
    description: str
    amount_cents: int


class PriceCalculation(BaseModel):
    original_amount_cents: int
    new_amount_cents: int
    price_delta_cents: int  # new charges for seats and add-ons
    charges: list[PriceLineItem] = Field(default_factory=list)
    fees: list[PriceLineItem] = Field(default_factory=list)
    refunds: list[PriceLineItem] = Field(default_factory=list)
    total_fees_cents: int = 0
    total_refunds_cents: int = 0
    final_amount_cents: int  # positive charges the customer, negative refunds them
    player_refund_percent: Optional[int] = None


class PolicyInfo(BaseModel):
    cancellation_policy: str
    reschedule_policy: str
    refund_policy: str


class EditPreview(BaseModel):
    booking_id: str
    validation: EditValidationResult
    price_calculation: PriceCalculation
    changes: list[AuditChange]
    policies: PolicyInfo


class EditResult(BaseModel):
    booking: Booking
    price_calculation: PriceCalculation
    changes: list[AuditChange]
    audit_entry_id: str
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    refund_status: Optional[RefundStatus] = None
    warnings: list[str] = Field(default_factory=list)
    replayed: bool = False


class TransferRequest(BaseModel):
    new_owner_id: str
    customer_info: Optional[CustomerInfo] = None


class TransferResult(BaseModel):
    booking: Booking
    transfer_fee_cents: int
    payment_intent_id: Optional[str] = None
    changes: list[AuditChange]
    audit_entry_id: str
    replayed: bool = False


class CancellationOutcomeStatus(str, Enum):
    CANCELED = "canceled"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


class CancellationOutcome(BaseModel):
    status: CancellationOutcomeStatus
    booking: Booking
    calculation: RefundCalculation
    review_reasons: list[str] = Field(default_factory=list)
    refund_id: Optional[str] = None
    refund_status: Optional[RefundStatus] = None
    audit_entry_id: Optional[str] = None
    replayed: bool = False


class StatusTransitionRequest(BaseModel):
    status: BookingStatus
    reason: Optional[str] = None
    notes: Optional[str] = None


class DisputeOutcome(BaseModel):
    booking: Booking
    dispute: Dispute
    audit_entry_id: str


class DisputeOpenRequest(BaseModel):
    reason: DisputeReason = DisputeReason.GENERAL
    amount_cents: Optional[int] = Field(default=None, gt=0)


class DisputeResolutionRequest(BaseModel):
    outcome: DisputeOutcomeType
    reason: str = Field(min_length=1)
