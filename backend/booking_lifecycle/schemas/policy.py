"""
Cancellation policy schemas.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from booking_lifecycle.core.errors import ValidationError


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    WEATHER = "weather"
    MAINTENANCE = "maintenance"
    OVERBOOKING = "overbooking"
    COURSE_CLOSURE = "course_closure"
    OTHER = "other"


class CancellationPolicy(BaseModel):
    """One refund tier: applies when hours_before_min <= hours < hours_before_max."""

    hours_before_min: int = Field(ge=0)
    hours_before_max: Optional[int] = None  # None = no upper bound
    refund_percent: int = Field(ge=0, le=100)
    fixed_fee_cents: int = Field(default=0, ge=0)
    description: str
    is_active: bool = True

    model_config = {"frozen": True}

    def contains(self, hours: int) -> bool:
        if hours < self.hours_before_min:
            return False
        return self.hours_before_max is None or hours < self.hours_before_max


DEFAULT_CANCELLATION_POLICIES: list[CancellationPolicy] = [
    CancellationPolicy(
        hours_before_min=48,
        refund_percent=100,
        description="Full refund for cancellations 48+ hours in advance",
    ),
    CancellationPolicy(
        hours_before_min=24,
        hours_before_max=48,
        refund_percent=50,
        description="50% refund for cancellations 24-48 hours in advance",
    ),
    CancellationPolicy(
        hours_before_min=0,
        hours_before_max=24,
        refund_percent=0,
        fixed_fee_cents=1000,
        description="No refund for cancellations less than 24 hours in advance",
    ),
]


def validate_policy_tiers(tiers: list[CancellationPolicy]) -> list[CancellationPolicy]:
    """
    Check that active tiers cover [0, inf) exactly once.

    Raises ValidationError listing every problem found.
    """
    active = sorted((t for t in tiers if t.is_active), key=lambda t: t.hours_before_min)
    problems: list[str] = []
    if not active:
        return list(tiers)

    if active[0].hours_before_min != 0:
        problems.append("Lowest tier must start at 0 hours")
    for lower, upper in zip(active, active[1:]):
        if lower.hours_before_max is None:
            problems.append(f"Tier starting at {lower.hours_before_min}h has no upper bound but is not the last tier")
        elif lower.hours_before_max != upper.hours_before_min:
            problems.append(
                f"Tiers {lower.hours_before_min}-{lower.hours_before_max}h and "
                f"{upper.hours_before_min}h are not contiguous"
            )
    for tier in active:
        if tier.hours_before_max is not None and tier.hours_before_max <= tier.hours_before_min:
            problems.append(f"Tier starting at {tier.hours_before_min}h has an empty range")
    if active[-1].hours_before_max is not None:
        problems.append("Highest tier must have no upper bound")

    if problems:
        raise ValidationError("Invalid cancellation policy tiers", details={"problems": problems})
    return list(tiers)


class FeeItem(BaseModel):
    description: str
    amount_cents: int


class RefundCalculation(BaseModel):
    original_amount_cents: int
    refund_percent: int
    gross_refund_cents: int
    fixed_fee_cents: int
    net_refund_cents: int
    description: str
    fees: list[FeeItem] = Field(default_factory=list)
    applied_policy: Optional[CancellationPolicy] = None
    hours_until_booking: int
    policy_matched: bool = True


class CancellationRequest(BaseModel):
    reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST
    reason_details: Optional[str] = None
    admin_override: bool = False
    admin_notes: Optional[str] = None
    override_refund_percent: Optional[int] = Field(default=None, ge=0, le=100)


class CancellationResult(BaseModel):
    """Policy decision for a cancellation; never settles money by itself."""

    booking_id: str
    calculation: RefundCalculation
    requires_manual_review: bool
    review_reasons: list[str] = Field(default_factory=list)
