"""
Payment intent, refund and dispute schemas.

Records are append/transition-only; the PaymentManager is the only writer.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentIntentStatus(str, Enum):
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


INTENT_TRANSITIONS: dict[PaymentIntentStatus, frozenset[PaymentIntentStatus]] = {
    PaymentIntentStatus.REQUIRES_CONFIRMATION: frozenset({PaymentIntentStatus.REQUIRES_CAPTURE}),
    PaymentIntentStatus.REQUIRES_CAPTURE: frozenset({
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.CANCELED,
    }),
    PaymentIntentStatus.SUCCEEDED: frozenset(),
    PaymentIntentStatus.CANCELED: frozenset(),
}


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    EXPIRED_UNCAPTURED_CHARGE = "expired_uncaptured_charge"
    CANCELLATION_POLICY = "cancellation_policy"
    WEATHER = "weather"
    MAINTENANCE = "maintenance"
    OVERBOOKING = "overbooking"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DisputeReason(str, Enum):
    CREDIT_NOT_PROCESSED = "credit_not_processed"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    GENERAL = "general"
    PRODUCT_NOT_RECEIVED = "product_not_received"
    PRODUCT_UNACCEPTABLE = "product_unacceptable"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    UNRECOGNIZED = "unrecognized"


class DisputeStatus(str, Enum):
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"
    CHARGE_REFUNDED = "charge_refunded"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.NEEDS_RESPONSE, DisputeStatus.UNDER_REVIEW})


class DisputeOutcomeType(str, Enum):
    WON = "won"
    LOST = "lost"


class PaymentIntent(BaseModel):
    id: str
    amount_cents: int = Field(gt=0)
    amount_captured_cents: int = 0
    currency: str = "usd"
    status: PaymentIntentStatus = PaymentIntentStatus.REQUIRES_CONFIRMATION
    payment_method_id: str
    booking_id: str
    customer_id: str
    description: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    gateway_reference: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    authorization_expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class Refund(BaseModel):
    id: str
    payment_intent_id: str
    amount_cents: int = Field(gt=0)
    reason: RefundReason
    status: RefundStatus = RefundStatus.PENDING
    description: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class DisputeEvidence(BaseModel):
    cancellation_policy: Optional[str] = None
    cancellation_policy_disclosure: Optional[str] = None
    cancellation_rebuttal: Optional[str] = None
    customer_communication: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email_address: Optional[str] = None
    receipt: Optional[str] = None
    service_date: Optional[str] = None
    service_documentation: Optional[str] = None
    refund_policy: Optional[str] = None
    uncategorized_text: Optional[str] = None

    def is_substantive(self, min_length: int = 20) -> bool:
        """At least one narrative field carries real content."""
        return any(
            value is not None and len(value.strip()) >= min_length
            for value in self.model_dump().values()
        )


class Dispute(BaseModel):
    id: str
    payment_intent_id: str
    amount_cents: int
    currency: str = "usd"
    reason: DisputeReason
    status: DisputeStatus = DisputeStatus.NEEDS_RESPONSE
    evidence: Optional[DisputeEvidence] = None
    created_at: datetime
    evidence_due_by: datetime
    responded_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RefundEligibility(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    max_refund_cents: int = 0


class AuthorizationExpiry(BaseModel):
    expiring: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    hours_remaining: Optional[float] = None


class PaymentSummary(BaseModel):
    booking_id: str
    total_authorized_cents: int = 0
    total_captured_cents: int = 0
    total_refunded_cents: int = 0
    total_disputed_cents: int = 0
    net_amount_cents: int = 0
    pending_captures: int = 0
    pending_refunds: int = 0
    active_disputes: int = 0


class PaymentPolicies(BaseModel):
    authorization_hold_days: int = 7
    auto_capture: bool = False
    auto_capture_delay_minutes: int = 60
    refund_processing_days: int = 5
    dispute_response_days: int = 7
    minimum_refund_amount_cents: int = 100
    maximum_refund_days: int = 180
    currency: str = "usd"
    gateway_timeout_seconds: float = 10.0
    gateway_max_attempts: int = 3
    gateway_retry_backoff_seconds: float = 0.2

    model_config = {"frozen": True}
