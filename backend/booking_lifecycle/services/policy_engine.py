"""
Cancellation policy engine.

TIER SELECTION
==============

hours_until_booking = floor((tee_time - now) / 1h)

Active tiers are sorted by hours_before_min descending and the first whose
[hours_before_min, hours_before_max) bracket contains the hours wins; the
top tier has no upper bound. With the default tiers:

  >= 48h        100% refund, no fee
  [24h, 48h)     50% refund, no fee
  [0h, 24h)       0% refund, $10 processing fee

Weather and course closure short-circuit to a full refund with no fee,
whatever the timing.

If nothing matches (tee time already passed, or a course configured a gap),
the most restrictive tier is applied and the description says so explicitly.
No configured tiers at all yields a zero refund with the same explicit
description. The engine never fails silently and never guesses generously.

compute_refund() is pure: tiers, amounts and "now" all come in as arguments.
CancellationPolicyService adds tier lookup per course, the injected clock,
and the manual-review gate.
"""

import math
from datetime import datetime
from typing import Optional

from booking_lifecycle.core.clock import Clock, ensure_utc, utc_now
from booking_lifecycle.core.errors import ValidationError
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import cancellation_decisions
from booking_lifecycle.core.money import format_cents, percent_of
from booking_lifecycle.repositories.interfaces import CourseRepository
from booking_lifecycle.schemas.booking import (
    CANCELLABLE_STATUSES,
    EDITABLE_STATUSES,
    Booking,
    BookingStatus,
    PaymentStatus,
)
from booking_lifecycle.schemas.policy import (
    CancellationPolicy,
    CancellationReason,
    CancellationRequest,
    CancellationResult,
    FeeItem,
    RefundCalculation,
)

logger = get_logger(__name__)

WEATHER_OVERRIDE_REASONS = frozenset({CancellationReason.WEATHER, CancellationReason.COURSE_CLOSURE})
NO_APPLICABLE_POLICY = "No applicable cancellation policy"


def hours_until(tee_datetime: datetime, now: datetime) -> int:
    return math.floor((ensure_utc(tee_datetime) - ensure_utc(now)).total_seconds() / 3600)


def select_tier(tiers: list[CancellationPolicy], hours: int) -> Optional[CancellationPolicy]:
    active = sorted((t for t in tiers if t.is_active), key=lambda t: t.hours_before_min, reverse=True)
    for tier in active:
        if tier.contains(hours):
            return tier
    return None


def most_restrictive(tiers: list[CancellationPolicy]) -> Optional[CancellationPolicy]:
    active = [t for t in tiers if t.is_active]
    if not active:
        return None
    return min(active, key=lambda t: (t.refund_percent, -t.fixed_fee_cents))


def _calculation(
    total_amount_cents: int,
    percent: int,
    fee_cents: int,
    description: str,
    hours: int,
    policy: Optional[CancellationPolicy] = None,
    matched: bool = True,
) -> RefundCalculation:
    gross = percent_of(total_amount_cents, percent)
    fees = [FeeItem(description="Processing fee", amount_cents=fee_cents)] if fee_cents else []
    return RefundCalculation(
        original_amount_cents=total_amount_cents,
        refund_percent=percent,
        gross_refund_cents=gross,
        fixed_fee_cents=fee_cents,
        net_refund_cents=max(0, gross - fee_cents),
        description=description,
        fees=fees,
        applied_policy=policy,
        hours_until_booking=hours,
        policy_matched=matched,
    )


def compute_refund(
    tiers: list[CancellationPolicy],
    booking_datetime: datetime,
    total_amount_cents: int,
    reason: Optional[CancellationReason],
    now: datetime,
) -> RefundCalculation:
    if total_amount_cents < 0:
        raise ValidationError("Total amount cannot be negative")
    hours = hours_until(booking_datetime, now)

    if reason in WEATHER_OVERRIDE_REASONS:
        return _calculation(
            total_amount_cents, 100, 0,
            f"Full refund due to {reason.value.replace('_', ' ')}",
            hours,
        )

    tier = select_tier(tiers, hours)
    if tier is not None:
        return _calculation(
            total_amount_cents, tier.refund_percent, tier.fixed_fee_cents,
            tier.description, hours, policy=tier,
        )

    fallback = most_restrictive(tiers)
    if fallback is None:
        return _calculation(total_amount_cents, 0, 0, NO_APPLICABLE_POLICY, hours, matched=False)
    return _calculation(
        total_amount_cents, fallback.refund_percent, fallback.fixed_fee_cents,
        f"{NO_APPLICABLE_POLICY}; applied most restrictive tier: {fallback.description}",
        hours, policy=fallback, matched=False,
    )


def _tier_label(tier: CancellationPolicy) -> str:
    if tier.hours_before_max is None:
        window = f"{tier.hours_before_min}+ hours before tee time"
    elif tier.hours_before_min == 0:
        window = f"Less than {tier.hours_before_max} hours before tee time"
    else:
        window = f"{tier.hours_before_min}-{tier.hours_before_max} hours before tee time"

    if tier.refund_percent == 100:
        outcome = "Full refund"
    elif tier.refund_percent == 0:
        outcome = "No refund"
    else:
        outcome = f"{tier.refund_percent}% refund"
    if tier.fixed_fee_cents:
        outcome += f" ({format_cents(tier.fixed_fee_cents)} processing fee)"
    return f"{window}: {outcome}"


class CancellationPolicyService:
    def __init__(
        self,
        courses: CourseRepository,
        clock: Clock = utc_now,
        manual_review_threshold_cents: int = 50000,
        override_refund_percent: int = 100,
    ):
        self.courses = courses
        self.clock = clock
        self.manual_review_threshold_cents = manual_review_threshold_cents
        self.override_refund_percent = override_refund_percent

    async def calculate_refund(
        self,
        course_id: str,
        booking_datetime: datetime,
        total_amount_cents: int,
        reason: Optional[CancellationReason] = None,
    ) -> RefundCalculation:
        tiers = await self.courses.get_cancellation_policies(course_id)
        calculation = compute_refund(tiers, booking_datetime, total_amount_cents, reason, self.clock())
        if not calculation.policy_matched:
            logger.warning(
                "cancellation_policy_fallback",
                course_id=course_id,
                hours_until_booking=calculation.hours_until_booking,
            )
        return calculation

    async def process_cancellation(self, booking: Booking, request: CancellationRequest) -> CancellationResult:
        """Apply the manual-review gate. Decides only; settlement is the caller's job."""
        calculation = await self.calculate_refund(
            booking.course_id, booking.tee_datetime, booking.total_amount_cents, request.reason
        )
        notes = (request.admin_notes or "").strip()
        if request.admin_override and notes:
            percent = request.override_refund_percent
            if percent is None:
                percent = self.override_refund_percent
            calculation = _calculation(
                booking.total_amount_cents, percent, 0,
                f"Administrative override: {notes}",
                calculation.hours_until_booking,
            )

        review_reasons = []
        if calculation.net_refund_cents > self.manual_review_threshold_cents:
            review_reasons.append(
                f"Refund of {format_cents(calculation.net_refund_cents)} exceeds automatic approval "
                f"limit of {format_cents(self.manual_review_threshold_cents)}"
            )
        if booking.payment_status == PaymentStatus.DISPUTED:
            review_reasons.append("Payment is under dispute")
        if request.admin_override and not notes:
            review_reasons.append("Administrative override requires a written justification")

        requires_review = bool(review_reasons)
        cancellation_decisions.labels(outcome="manual_review" if requires_review else "auto_approved").inc()
        logger.info(
            "cancellation_processed",
            booking_id=booking.id,
            net_refund_cents=calculation.net_refund_cents,
            refund_percent=calculation.refund_percent,
            requires_manual_review=requires_review,
        )
        return CancellationResult(
            booking_id=booking.id,
            calculation=calculation,
            requires_manual_review=requires_review,
            review_reasons=review_reasons,
        )

    async def get_policy_summary(self, course_id: str) -> list[str]:
        tiers = await self.courses.get_cancellation_policies(course_id)
        active = sorted((t for t in tiers if t.is_active), key=lambda t: t.hours_before_min, reverse=True)
        summary = [_tier_label(t) for t in active]
        summary.append("Weather or course closure: Full refund")
        return summary

    def can_cancel(self, status: BookingStatus, tee_datetime: datetime) -> list[str]:
        """Reasons the booking cannot be canceled; empty when it can."""
        reasons = []
        if status not in CANCELLABLE_STATUSES:
            reasons.append(f"Booking cannot be canceled in status {status.value}")
        if ensure_utc(tee_datetime) <= self.clock():
            reasons.append("Tee time has already passed")
        return reasons

    def can_reschedule(self, status: BookingStatus, tee_datetime: datetime) -> list[str]:
        reasons = []
        if status not in EDITABLE_STATUSES:
            reasons.append(f"Booking cannot be rescheduled in status {status.value}")
        if ensure_utc(tee_datetime) <= self.clock():
            reasons.append("Tee time has already passed")
        return reasons
