"""
Tests for the payment intent state machine, refunds, disputes and gateway resilience.
"""

import asyncio
from datetime import timedelta

import pytest

from booking_lifecycle.core.clock import FrozenClock
from booking_lifecycle.core.errors import (
    DisputeEvidenceRejected,
    GatewayUnavailable,
    InvalidPaymentState,
    PaymentFailure,
    RefundNotAllowed,
    ValidationError,
)
from booking_lifecycle.repositories.memory import InMemoryPaymentRepository
from booking_lifecycle.schemas.payment import (
    DisputeEvidence,
    DisputeOutcomeType,
    DisputeStatus,
    PaymentIntentStatus,
    PaymentPolicies,
    RefundReason,
    RefundStatus,
)
from booking_lifecycle.services.interfaces import SimulatedPaymentGateway
from booking_lifecycle.services.payment_manager import PaymentManager

from conftest import NOW


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway()


@pytest.fixture
def manager(gateway, clock):
    policies = PaymentPolicies(gateway_timeout_seconds=0.05, gateway_max_attempts=3, gateway_retry_backoff_seconds=0)
    return PaymentManager(InMemoryPaymentRepository(), gateway, policies, clock=clock)


async def _captured(manager: PaymentManager, amount: int = 20000):
    return await manager.create_payment_intent(amount, "bk_1", "cust_1", "pm_ok", capture_method="automatic")


@pytest.mark.asyncio
async def test_manual_intent_is_held(manager):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    assert intent.status == PaymentIntentStatus.REQUIRES_CAPTURE
    assert intent.authorization_expires_at == intent.authorized_at + timedelta(days=7)
    assert intent.amount_captured_cents == 0


@pytest.mark.asyncio
async def test_automatic_intent_is_captured(manager, gateway):
    intent = await _captured(manager)
    assert intent.status == PaymentIntentStatus.SUCCEEDED
    assert intent.amount_captured_cents == 20000
    assert gateway.count("authorize") == 1
    assert gateway.count("capture") == 1


@pytest.mark.asyncio
async def test_non_positive_amount_rejected(manager):
    with pytest.raises(ValidationError):
        await manager.create_payment_intent(0, "bk_1", "cust_1", "pm_ok")


@pytest.mark.asyncio
async def test_declined_card_fails_without_retry(manager, gateway):
    gateway.declined_payment_methods.add("pm_declined")
    with pytest.raises(PaymentFailure) as exc_info:
        await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_declined")
    assert exc_info.value.gateway_code == "card_declined"

    intents = await manager.repository.list_intents_for_booking("bk_1")
    assert intents[0].status == PaymentIntentStatus.REQUIRES_CONFIRMATION
    assert intents[0].last_error == "card declined"


@pytest.mark.asyncio
async def test_status_only_moves_forward(manager):
    intent = await _captured(manager)
    with pytest.raises(InvalidPaymentState):
        await manager.capture_payment(intent.id)
    with pytest.raises(InvalidPaymentState):
        await manager.cancel_authorization(intent.id)


@pytest.mark.asyncio
async def test_cancel_releases_hold(manager, gateway):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    canceled = await manager.cancel_authorization(intent.id, reason="customer_changed_mind")
    assert canceled.status == PaymentIntentStatus.CANCELED
    assert canceled.metadata["cancellation_reason"] == "customer_changed_mind"
    with pytest.raises(InvalidPaymentState):
        await manager.capture_payment(intent.id)


@pytest.mark.asyncio
async def test_capture_after_hold_expiry_rejected(manager, clock):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    clock.advance(days=8)
    with pytest.raises(InvalidPaymentState):
        await manager.capture_payment(intent.id)


@pytest.mark.asyncio
async def test_capture_more_than_authorized_rejected(manager):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    with pytest.raises(ValidationError):
        await manager.capture_payment(intent.id, amount_cents=5001)
    partial = await manager.capture_payment(intent.id, amount_cents=3000)
    assert partial.amount_captured_cents == 3000


@pytest.mark.asyncio
async def test_transient_errors_are_retried(manager, gateway):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    gateway.fail_next("capture", "processing_error", times=2)
    captured = await manager.capture_payment(intent.id)
    assert captured.status == PaymentIntentStatus.SUCCEEDED
    assert gateway.count("capture") == 1


@pytest.mark.asyncio
async def test_retry_budget_exhausted(manager, gateway):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    gateway.fail_next("capture", "rate_limit", times=3)
    with pytest.raises(GatewayUnavailable) as exc_info:
        await manager.capture_payment(intent.id)
    assert exc_info.value.retryable
    assert exc_info.value.__cause__ is not None

    stored = await manager.get_payment_intent(intent.id)
    assert stored.status == PaymentIntentStatus.REQUIRES_CAPTURE


@pytest.mark.asyncio
async def test_slow_gateway_times_out(manager, gateway):
    gateway.latency_seconds = 0.5
    with pytest.raises(GatewayUnavailable):
        await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")


@pytest.mark.asyncio
async def test_authorization_expiry_warning(manager, clock):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    assert not manager.is_authorization_expiring(intent).expiring

    clock.advance(days=6, hours=12)
    check = manager.is_authorization_expiring(intent)
    assert check.expiring
    assert check.hours_remaining == 12

    clock.advance(days=1)
    assert manager.is_authorization_expiring(intent).reason == "Authorization has expired"


@pytest.mark.asyncio
async def test_refund_settles_asynchronously(manager, gateway):
    intent = await _captured(manager)
    refund = await manager.create_refund(intent.id, 5000, RefundReason.REQUESTED_BY_CUSTOMER)
    assert refund.status == RefundStatus.PENDING

    settled = await manager.wait_for_refund(refund.id, timeout=1)
    assert settled.status == RefundStatus.SUCCEEDED
    assert settled.processed_at is not None
    assert gateway.count("refund") == 1


@pytest.mark.asyncio
async def test_refund_requires_capture(manager):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    eligibility = await manager.can_refund(intent, 1000)
    assert not eligibility.allowed
    with pytest.raises(RefundNotAllowed):
        await manager.create_refund(intent.id, 1000)


@pytest.mark.asyncio
async def test_refund_minimum_and_age(manager, clock):
    intent = await _captured(manager)
    small = await manager.can_refund(intent, 50)
    assert not small.allowed
    assert small.reason == "Minimum refund amount is $1.00"

    clock.advance(days=181)
    late = await manager.can_refund(intent, 5000)
    assert late.reason == "Refund period expired (180 days)"


@pytest.mark.asyncio
async def test_refunds_cannot_exceed_capture(manager):
    intent = await _captured(manager)
    first = await manager.create_refund(intent.id, 15000)
    await manager.wait_for_refund(first.id, timeout=1)

    with pytest.raises(RefundNotAllowed) as exc_info:
        await manager.create_refund(intent.id, 6000)
    assert exc_info.value.details["max_refund_cents"] == 5000

    rest = await manager.create_refund(intent.id)
    assert rest.amount_cents == 5000
    await manager.wait_for_refund(rest.id, timeout=1)
    exhausted = await manager.can_refund(await manager.get_payment_intent(intent.id))
    assert exhausted.reason == "Payment has been fully refunded"


@pytest.mark.asyncio
async def test_concurrent_refunds_cannot_overdraw(manager):
    """Two 150 refunds against 200: exactly one is accepted."""
    intent = await _captured(manager)
    results = await asyncio.gather(
        manager.create_refund(intent.id, 15000),
        manager.create_refund(intent.id, 15000),
        return_exceptions=True,
    )
    accepted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, RefundNotAllowed)]
    assert len(accepted) == 1
    assert len(rejected) == 1


@pytest.mark.asyncio
async def test_failed_refund_frees_amount(manager, gateway):
    intent = await _captured(manager)
    gateway.fail_next("refund", "card_declined")
    refund = await manager.create_refund(intent.id, 20000)
    failed = await manager.wait_for_refund(refund.id, timeout=1)
    assert failed.status == RefundStatus.FAILED
    assert failed.failure_reason == "card declined"

    eligibility = await manager.can_refund(intent, 20000)
    assert eligibility.allowed


@pytest.mark.asyncio
async def test_refund_id_is_idempotent(manager, gateway):
    intent = await _captured(manager)
    first = await manager.create_refund(intent.id, 4000, refund_id="re_fixed")
    await manager.wait_for_refund(first.id, timeout=1)
    again = await manager.create_refund(intent.id, 4000, refund_id="re_fixed")
    assert again.id == "re_fixed"
    assert gateway.count("refund") == 1


@pytest.mark.asyncio
async def test_dispute_lifecycle(manager, clock):
    intent = await _captured(manager)
    dispute = await manager.open_dispute(intent.id)
    assert dispute.status == DisputeStatus.NEEDS_RESPONSE
    assert dispute.amount_cents == 20000

    with pytest.raises(DisputeEvidenceRejected):
        await manager.respond_to_dispute(dispute.id, DisputeEvidence(uncategorized_text="too short"))

    evidence = DisputeEvidence(
        service_date="2026-06-03",
        service_documentation="Tee sheet shows the group checked in at 08:10 and completed 18 holes.",
    )
    responded = await manager.respond_to_dispute(dispute.id, evidence)
    assert responded.status == DisputeStatus.UNDER_REVIEW

    won = await manager.resolve_dispute(dispute.id, DisputeOutcomeType.WON)
    assert won.status == DisputeStatus.WON
    with pytest.raises(InvalidPaymentState):
        await manager.resolve_dispute(dispute.id, DisputeOutcomeType.LOST)


@pytest.mark.asyncio
async def test_dispute_evidence_after_due_date(manager, clock):
    intent = await _captured(manager)
    dispute = await manager.open_dispute(intent.id, amount_cents=5000)
    clock.advance(days=8)
    with pytest.raises(DisputeEvidenceRejected):
        await manager.respond_to_dispute(
            dispute.id, DisputeEvidence(cancellation_rebuttal="The customer played the full round as booked.")
        )


@pytest.mark.asyncio
async def test_only_captured_payments_can_be_disputed(manager):
    intent = await manager.create_payment_intent(5000, "bk_1", "cust_1", "pm_ok")
    with pytest.raises(InvalidPaymentState):
        await manager.open_dispute(intent.id)


@pytest.mark.asyncio
async def test_payment_summary(manager):
    intent = await _captured(manager)
    await manager.create_payment_intent(3000, "bk_1", "cust_1", "pm_ok")
    refund = await manager.create_refund(intent.id, 2000)
    await manager.wait_for_refund(refund.id, timeout=1)
    await manager.open_dispute(intent.id, amount_cents=1000)

    summary = await manager.get_payment_summary("bk_1")
    assert summary.total_captured_cents == 20000
    assert summary.total_authorized_cents == 23000
    assert summary.pending_captures == 1
    assert summary.total_refunded_cents == 2000
    assert summary.net_amount_cents == 18000
    assert summary.active_disputes == 1
    assert summary.total_disputed_cents == 1000
