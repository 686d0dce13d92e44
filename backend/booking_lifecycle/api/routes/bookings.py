"""
Booking lifecycle endpoints: edits, transfers, cancellations, status changes and disputes.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from booking_lifecycle.api.dependencies import (
    get_actor,
    get_container,
    get_idempotency_key,
    require_idempotency_key,
    require_staff,
)
from booking_lifecycle.container import Container
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.schemas.audit import Actor
from booking_lifecycle.schemas.booking import Booking
from booking_lifecycle.schemas.edit import (
    BookingChanges,
    CancellationOutcome,
    CancellationOutcomeStatus,
    DisputeOpenRequest,
    DisputeOutcome,
    DisputeResolutionRequest,
    EditPreview,
    EditResult,
    StatusTransitionRequest,
    TransferRequest,
    TransferResult,
)
from booking_lifecycle.schemas.payment import PaymentSummary
from booking_lifecycle.schemas.policy import CancellationReason, CancellationRequest, RefundCalculation

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _load_for_actor(container: Container, booking_id: str, actor: Actor) -> Booking:
    booking = await container.edits.get_booking(booking_id)
    if not actor.is_staff and booking.owner_id != actor.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this booking")
    return booking


@router.get("/{booking_id}", response_model=Booking)
async def get_booking_endpoint(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    container: Container = Depends(get_container),
):
    return await _load_for_actor(container, booking_id, actor)


@router.post("/{booking_id}/edits/preview", response_model=EditPreview)
async def preview_edit(
    booking_id: str,
    changes: BookingChanges,
    actor: Actor = Depends(get_actor),
    container: Container = Depends(get_container),
):
    """
    Validate and price a proposed change without committing anything.

    Always returns 200; check validation.is_valid and validation.reasons.
    """
    booking = await _load_for_actor(container, booking_id, actor)
    course = await container.edits.get_course(booking.course_id)
    return await container.edits.calculate_edit_preview(booking, course, changes, actor.id)


@router.post("/{booking_id}/edits", response_model=EditResult)
async def commit_edit(
    booking_id: str,
    changes: BookingChanges,
    actor: Actor = Depends(get_actor),
    idempotency_key: str = Depends(require_idempotency_key),
    container: Container = Depends(get_container),
):
    """
    Commit a change. Charges or refunds the difference, moves inventory and
    writes one audit entry. Retrying with the same Idempotency-Key returns the
    original result.
    """
    await _load_for_actor(container, booking_id, actor)
    return await container.edits.execute_edit(booking_id, changes, actor, idempotency_key)


@router.post("/{booking_id}/transfer", response_model=TransferResult)
async def transfer_booking_endpoint(
    booking_id: str,
    request: TransferRequest,
    actor: Actor = Depends(get_actor),
    idempotency_key: str = Depends(require_idempotency_key),
    container: Container = Depends(get_container),
):
    await _load_for_actor(container, booking_id, actor)
    return await container.edits.transfer_booking(
        booking_id, request.new_owner_id, actor, idempotency_key, new_customer_info=request.customer_info
    )


@router.get("/{booking_id}/cancellation/quote", response_model=RefundCalculation)
async def cancellation_quote(
    booking_id: str,
    reason: Optional[CancellationReason] = Query(None),
    actor: Actor = Depends(get_actor),
    container: Container = Depends(get_container),
):
    """Refund the booking would receive if canceled now."""
    booking = await _load_for_actor(container, booking_id, actor)
    return await container.policy_engine.calculate_refund(
        booking.course_id, booking.tee_datetime, booking.total_amount_cents, reason
    )


@router.post("/{booking_id}/cancellation", response_model=CancellationOutcome)
async def cancel_booking_endpoint(
    booking_id: str,
    request: CancellationRequest,
    response: Response,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    container: Container = Depends(get_container),
):
    """
    Cancel and refund per the course's cancellation tiers.

    Returns 202 with status=manual_review_required when the refund needs
    staff approval; the booking is left untouched in that case.
    """
    await _load_for_actor(container, booking_id, actor)
    outcome = await container.edits.cancel_booking(booking_id, request, actor, idempotency_key)
    if outcome.status == CancellationOutcomeStatus.MANUAL_REVIEW_REQUIRED:
        response.status_code = status.HTTP_202_ACCEPTED
    return outcome


@router.post("/{booking_id}/status", response_model=Booking)
async def transition_status_endpoint(
    booking_id: str,
    request: StatusTransitionRequest,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.edits.transition_status(
        booking_id, request.status, actor, reason=request.reason, notes=request.notes
    )


@router.post("/{booking_id}/disputes", response_model=DisputeOutcome, status_code=status.HTTP_201_CREATED)
async def open_dispute_endpoint(
    booking_id: str,
    request: DisputeOpenRequest,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    """Record a chargeback reported by the processor."""
    return await container.edits.record_dispute(booking_id, actor, request.reason, request.amount_cents)


@router.post("/{booking_id}/disputes/{dispute_id}/resolution", response_model=DisputeOutcome)
async def resolve_dispute_endpoint(
    booking_id: str,
    dispute_id: str,
    request: DisputeResolutionRequest,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.edits.resolve_dispute(booking_id, dispute_id, request.outcome, actor, request.reason)


@router.get("/{booking_id}/payments", response_model=PaymentSummary)
async def booking_payment_summary(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    container: Container = Depends(get_container),
):
    await _load_for_actor(container, booking_id, actor)
    return await container.payments.get_payment_summary(booking_id)


@router.get("/{booking_id}/authorizations/expiring")
async def expiring_authorizations(
    booking_id: str,
    warning_days: int = Query(1, ge=0, le=30),
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    """Holds on this booking that must be captured or re-authorized soon."""
    await container.edits.get_booking(booking_id)
    return {
        "booking_id": booking_id,
        "authorizations": await container.edits.pending_authorizations(booking_id, warning_days),
    }
