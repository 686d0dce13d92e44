"""
Payment record lookups and dispute evidence. Staff-only.
"""

from fastapi import APIRouter, Depends

from booking_lifecycle.api.dependencies import get_container, require_staff
from booking_lifecycle.container import Container
from booking_lifecycle.schemas.audit import Actor
from booking_lifecycle.schemas.payment import AuthorizationExpiry, Dispute, DisputeEvidence, PaymentIntent, Refund

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("/intents/{intent_id}", response_model=PaymentIntent)
async def get_intent(
    intent_id: str,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.payments.get_payment_intent(intent_id)


@router.get("/intents/{intent_id}/expiry", response_model=AuthorizationExpiry)
async def get_intent_expiry(
    intent_id: str,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    intent = await container.payments.get_payment_intent(intent_id)
    return container.payments.is_authorization_expiring(intent)


@router.get("/refunds/{refund_id}", response_model=Refund)
async def get_refund(
    refund_id: str,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    """Latest refund state; refunds settle asynchronously."""
    return await container.payments.get_refund(refund_id)


@router.get("/disputes/{dispute_id}", response_model=Dispute)
async def get_dispute(
    dispute_id: str,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.payments.get_dispute(dispute_id)


@router.post("/disputes/{dispute_id}/evidence", response_model=Dispute)
async def submit_dispute_evidence(
    dispute_id: str,
    evidence: DisputeEvidence,
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.payments.respond_to_dispute(dispute_id, evidence)
