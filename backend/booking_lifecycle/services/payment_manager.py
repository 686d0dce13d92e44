"""
Payment manager: payment intent state machine, refunds and disputes.

STATE MACHINE
=============

  requires_confirmation --authorize--> requires_capture --capture--> succeeded
                                                        --cancel---> canceled

Status only moves forward. Refunds and disputes are separate records that
reference a succeeded intent.

GATEWAY CALLS
=============

Every gateway call runs under asyncio.wait_for with an explicit timeout and
is retried with linear backoff while the failure is retryable (timeouts and
the processor's transient codes). Because gateway calls are idempotent on
object id, a retry after a timeout cannot move money twice.

  - non-retryable decline      -> PaymentFailure
  - retries exhausted/timeouts -> GatewayUnavailable (retryable, cause chained)

REFUNDS
=======

create_refund() checks can_refund() and persists the refund as `pending`
while holding a per-intent lock, so two concurrent refunds cannot both pass
the remaining-amount check. Processing happens in a background task; callers
observe completion with wait_for_refund(). There is no synchronous guarantee.
"""

import asyncio
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from booking_lifecycle.core.clock import Clock, utc_now
from booking_lifecycle.core.errors import (
    BookingLifecycleError,
    DisputeEvidenceRejected,
    ErrorCode,
    GatewayUnavailable,
    InvalidPaymentState,
    NotFoundError,
    PaymentFailure,
    RefundNotAllowed,
    ValidationError,
)
from booking_lifecycle.core.locks import KeyedLocks
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import gateway_latency, record_payment_operation, refund_amount
from booking_lifecycle.core.money import format_cents
from booking_lifecycle.repositories.interfaces import PaymentRepository
from booking_lifecycle.schemas.payment import (
    ACTIVE_DISPUTE_STATUSES,
    INTENT_TRANSITIONS,
    AuthorizationExpiry,
    Dispute,
    DisputeEvidence,
    DisputeOutcomeType,
    DisputeReason,
    DisputeStatus,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentPolicies,
    PaymentSummary,
    Refund,
    RefundEligibility,
    RefundReason,
    RefundStatus,
)
from booking_lifecycle.services.interfaces.payment_gateway import GatewayError, PaymentGateway

logger = get_logger(__name__)


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


class PaymentManager:
    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PaymentGateway,
        policies: Optional[PaymentPolicies] = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.gateway = gateway
        self.policies = policies or PaymentPolicies()
        self.clock = clock
        self._intent_locks = KeyedLocks()
        self._refund_events: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Gateway plumbing
    # ------------------------------------------------------------------

    async def _call_gateway(self, operation: str, call: Callable[[], Awaitable[str]]) -> str:
        attempts = max(1, self.policies.gateway_max_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                with gateway_latency.labels(operation=operation).time():
                    reference = await asyncio.wait_for(call(), timeout=self.policies.gateway_timeout_seconds)
                record_payment_operation(operation, "success")
                return reference
            except asyncio.TimeoutError as e:
                record_payment_operation(operation, "timeout")
                last_error = e
            except GatewayError as e:
                if not e.retryable:
                    record_payment_operation(operation, "failure")
                    raise PaymentFailure(e.message, gateway_code=e.code) from e
                record_payment_operation(operation, "retry")
                last_error = e

            logger.warning(
                "gateway_call_retry",
                operation=operation,
                attempt=attempt,
                error=str(last_error) or type(last_error).__name__,
            )
            if attempt < attempts:
                await asyncio.sleep(self.policies.gateway_retry_backoff_seconds * attempt)

        raise GatewayUnavailable(
            f"Payment gateway {operation} failed after {attempts} attempts",
            details={"operation": operation},
        ) from last_error

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _transition(intent: PaymentIntent, target: PaymentIntentStatus) -> None:
        if target not in INTENT_TRANSITIONS[intent.status]:
            raise InvalidPaymentState(
                f"Payment intent {intent.id} cannot move from {intent.status.value} to {target.value}"
            )
        intent.status = target

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self.repository.get_intent(intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {intent_id} not found", code=ErrorCode.PAYMENT_NOT_FOUND)
        return intent

    async def create_payment_intent(
        self,
        amount_cents: int,
        booking_id: str,
        customer_id: str,
        payment_method_id: str,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        capture_method: str = "manual",
    ) -> PaymentIntent:
        """
        Create and immediately authorize an intent.

        capture_method="automatic" also captures; if that capture fails the
        hold is released before the error propagates.
        """
        if amount_cents <= 0:
            raise ValidationError("Payment amount must be positive")

        intent = PaymentIntent(
            id=_generate_id("pi"),
            amount_cents=amount_cents,
            currency=currency or self.policies.currency,
            payment_method_id=payment_method_id,
            booking_id=booking_id,
            customer_id=customer_id,
            description=description,
            metadata=metadata or {},
            created_at=self.clock(),
        )
        await self.repository.save_intent(intent)
        logger.info("payment_intent_created", payment_intent_id=intent.id, booking_id=booking_id, amount_cents=amount_cents)

        intent = await self.authorize_payment(intent.id)

        if capture_method == "automatic":
            try:
                intent = await self.capture_payment(intent.id)
            except BookingLifecycleError:
                await self._release_quietly(intent.id)
                raise
        elif self.policies.auto_capture:
            self._spawn(self._auto_capture(intent.id, self.policies.auto_capture_delay_minutes * 60))
        return intent

    async def authorize_payment(self, intent_id: str) -> PaymentIntent:
        async with self._intent_locks.hold(intent_id):
            intent = await self.get_payment_intent(intent_id)
            if intent.status != PaymentIntentStatus.REQUIRES_CONFIRMATION:
                raise InvalidPaymentState(f"Payment intent {intent_id} is already {intent.status.value}")
            try:
                reference = await self._call_gateway(
                    "authorize",
                    lambda: self.gateway.authorize(
                        intent.id, intent.amount_cents, intent.currency, intent.payment_method_id
                    ),
                )
            except BookingLifecycleError as e:
                intent.last_error = e.message
                await self.repository.save_intent(intent)
                logger.warning("payment_authorization_failed", payment_intent_id=intent_id, error=e.message)
                raise

            now = self.clock()
            self._transition(intent, PaymentIntentStatus.REQUIRES_CAPTURE)
            intent.gateway_reference = reference
            intent.authorized_at = now
            intent.authorization_expires_at = now + timedelta(days=self.policies.authorization_hold_days)
            intent.last_error = None
            await self.repository.save_intent(intent)
        logger.info("payment_authorized", payment_intent_id=intent_id, amount_cents=intent.amount_cents)
        return intent

    async def capture_payment(self, intent_id: str, amount_cents: Optional[int] = None) -> PaymentIntent:
        async with self._intent_locks.hold(intent_id):
            intent = await self.get_payment_intent(intent_id)
            if intent.status != PaymentIntentStatus.REQUIRES_CAPTURE:
                raise InvalidPaymentState(
                    f"Payment intent {intent_id} cannot be captured in status {intent.status.value}"
                )
            if intent.authorization_expires_at and self.clock() >= intent.authorization_expires_at:
                raise InvalidPaymentState(f"Authorization for payment intent {intent_id} has expired")
            amount = intent.amount_cents if amount_cents is None else amount_cents
            if amount <= 0 or amount > intent.amount_cents:
                raise ValidationError(
                    f"Capture amount must be between 1 and {intent.amount_cents} cents",
                    details={"payment_intent_id": intent_id},
                )

            await self._call_gateway("capture", lambda: self.gateway.capture(intent.id, amount))

            self._transition(intent, PaymentIntentStatus.SUCCEEDED)
            intent.amount_captured_cents = amount
            intent.captured_at = self.clock()
            await self.repository.save_intent(intent)
        logger.info("payment_captured", payment_intent_id=intent_id, amount_cents=amount)
        return intent

    async def cancel_authorization(self, intent_id: str, reason: Optional[str] = None) -> PaymentIntent:
        async with self._intent_locks.hold(intent_id):
            intent = await self.get_payment_intent(intent_id)
            if intent.status != PaymentIntentStatus.REQUIRES_CAPTURE:
                raise InvalidPaymentState(
                    f"Payment intent {intent_id} cannot be canceled in status {intent.status.value}"
                )
            await self._call_gateway("cancel", lambda: self.gateway.cancel(intent.id))

            self._transition(intent, PaymentIntentStatus.CANCELED)
            intent.canceled_at = self.clock()
            if reason:
                intent.metadata = {**intent.metadata, "cancellation_reason": reason}
            await self.repository.save_intent(intent)
        logger.info("payment_authorization_canceled", payment_intent_id=intent_id, reason=reason)
        return intent

    async def _release_quietly(self, intent_id: str) -> None:
        try:
            await self.cancel_authorization(intent_id, reason="capture_failed")
        except BookingLifecycleError as e:
            logger.error("payment_hold_release_failed", payment_intent_id=intent_id, error=e.message)

    async def _auto_capture(self, intent_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        intent = await self.repository.get_intent(intent_id)
        if intent is None or intent.status != PaymentIntentStatus.REQUIRES_CAPTURE:
            return
        try:
            await self.capture_payment(intent_id)
            logger.info("payment_auto_captured", payment_intent_id=intent_id)
        except BookingLifecycleError as e:
            logger.error("payment_auto_capture_failed", payment_intent_id=intent_id, error=e.message)

    def is_authorization_expiring(self, intent: PaymentIntent, warning_days: int = 1) -> AuthorizationExpiry:
        if intent.status != PaymentIntentStatus.REQUIRES_CAPTURE or intent.authorization_expires_at is None:
            return AuthorizationExpiry(expiring=False, reason="Payment intent has no active authorization hold")

        remaining = intent.authorization_expires_at - self.clock()
        hours_remaining = round(remaining.total_seconds() / 3600, 2)
        if remaining.total_seconds() <= 0:
            return AuthorizationExpiry(
                expiring=True,
                reason="Authorization has expired",
                expires_at=intent.authorization_expires_at,
                hours_remaining=0.0,
            )
        if remaining <= timedelta(days=warning_days):
            return AuthorizationExpiry(
                expiring=True,
                reason=f"Authorization expires in {hours_remaining:g} hours; capture or re-authorize",
                expires_at=intent.authorization_expires_at,
                hours_remaining=hours_remaining,
            )
        return AuthorizationExpiry(
            expiring=False,
            expires_at=intent.authorization_expires_at,
            hours_remaining=hours_remaining,
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def _refunded_total(self, intent_id: str) -> int:
        refunds = await self.repository.list_refunds(intent_id)
        return sum(r.amount_cents for r in refunds if r.status != RefundStatus.FAILED)

    async def can_refund(self, intent: PaymentIntent, amount_cents: Optional[int] = None) -> RefundEligibility:
        """Report the specific constraint a refund would violate, if any."""
        if intent.status != PaymentIntentStatus.SUCCEEDED:
            return RefundEligibility(allowed=False, reason="Payment must be captured before refunding")

        max_days = self.policies.maximum_refund_days
        if intent.captured_at and self.clock() > intent.captured_at + timedelta(days=max_days):
            return RefundEligibility(allowed=False, reason=f"Refund period expired ({max_days} days)")

        available = intent.amount_captured_cents - await self._refunded_total(intent.id)
        if available <= 0:
            return RefundEligibility(allowed=False, reason="Payment has been fully refunded")

        amount = available if amount_cents is None else amount_cents
        if amount > available:
            return RefundEligibility(
                allowed=False,
                reason="Requested amount exceeds available refund amount",
                max_refund_cents=available,
            )
        minimum = self.policies.minimum_refund_amount_cents
        if amount < minimum:
            return RefundEligibility(
                allowed=False,
                reason=f"Minimum refund amount is {format_cents(minimum)}",
                max_refund_cents=available,
            )
        return RefundEligibility(allowed=True, max_refund_cents=available)

    async def create_refund(
        self,
        intent_id: str,
        amount_cents: Optional[int] = None,
        reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        refund_id: Optional[str] = None,
    ) -> Refund:
        """
        Validate and record a pending refund, then process it in the background.

        Passing an existing refund_id returns that refund unchanged.
        """
        if refund_id is not None:
            existing = await self.repository.get_refund(refund_id)
            if existing is not None:
                return existing

        async with self._intent_locks.hold(intent_id):
            intent = await self.get_payment_intent(intent_id)
            eligibility = await self.can_refund(intent, amount_cents)
            if not eligibility.allowed:
                logger.warning(
                    "refund_rejected",
                    payment_intent_id=intent_id,
                    amount_cents=amount_cents,
                    reason=eligibility.reason,
                )
                raise RefundNotAllowed(
                    eligibility.reason,
                    details={"payment_intent_id": intent_id, "max_refund_cents": eligibility.max_refund_cents},
                )
            amount = eligibility.max_refund_cents if amount_cents is None else amount_cents
            refund = Refund(
                id=refund_id or _generate_id("re"),
                payment_intent_id=intent_id,
                amount_cents=amount,
                reason=reason,
                description=description,
                metadata=metadata or {},
                created_at=self.clock(),
            )
            await self.repository.save_refund(refund)
            self._refund_events[refund.id] = asyncio.Event()

        logger.info("refund_created", refund_id=refund.id, payment_intent_id=intent_id, amount_cents=amount)
        self._spawn(self._process_refund(refund.id))
        return refund

    async def _process_refund(self, refund_id: str) -> None:
        refund = await self.repository.get_refund(refund_id)
        try:
            if refund is None or refund.status != RefundStatus.PENDING:
                return
            try:
                await self._call_gateway(
                    "refund",
                    lambda: self.gateway.refund(refund.id, refund.payment_intent_id, refund.amount_cents),
                )
            except BookingLifecycleError as e:
                refund.status = RefundStatus.FAILED
                refund.failed_at = self.clock()
                refund.failure_reason = e.message
                await self.repository.save_refund(refund)
                logger.error("refund_failed", refund_id=refund_id, error=e.message, retryable=e.retryable)
                return

            refund.status = RefundStatus.SUCCEEDED
            refund.processed_at = self.clock()
            await self.repository.save_refund(refund)
            refund_amount.inc(refund.amount_cents)
            logger.info("refund_succeeded", refund_id=refund_id, amount_cents=refund.amount_cents)
        finally:
            event = self._refund_events.pop(refund_id, None)
            if event is not None:
                event.set()

    async def get_refund(self, refund_id: str) -> Refund:
        refund = await self.repository.get_refund(refund_id)
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found", code=ErrorCode.PAYMENT_NOT_FOUND)
        return refund

    async def wait_for_refund(self, refund_id: str, timeout: float) -> Refund:
        """Wait up to timeout seconds for the refund to settle; returns its latest state."""
        event = self._refund_events.get(refund_id)
        if event is not None:
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.info("refund_still_pending", refund_id=refund_id, waited_seconds=timeout)
        return await self.get_refund(refund_id)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: str) -> Dispute:
        dispute = await self.repository.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", code=ErrorCode.PAYMENT_NOT_FOUND)
        return dispute

    async def open_dispute(
        self,
        intent_id: str,
        reason: DisputeReason = DisputeReason.GENERAL,
        amount_cents: Optional[int] = None,
    ) -> Dispute:
        intent = await self.get_payment_intent(intent_id)
        if intent.status != PaymentIntentStatus.SUCCEEDED:
            raise InvalidPaymentState("Only captured payments can be disputed")
        amount = intent.amount_captured_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > intent.amount_captured_cents:
            raise ValidationError("Dispute amount must not exceed the captured amount")

        now = self.clock()
        dispute = Dispute(
            id=_generate_id("dp"),
            payment_intent_id=intent_id,
            amount_cents=amount,
            currency=intent.currency,
            reason=reason,
            created_at=now,
            evidence_due_by=now + timedelta(days=self.policies.dispute_response_days),
        )
        await self.repository.save_dispute(dispute)
        logger.warning("dispute_opened", dispute_id=dispute.id, payment_intent_id=intent_id, amount_cents=amount)
        return dispute

    async def respond_to_dispute(self, dispute_id: str, evidence: DisputeEvidence) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        if dispute.status != DisputeStatus.NEEDS_RESPONSE:
            raise InvalidPaymentState(f"Dispute {dispute_id} is {dispute.status.value}, not awaiting a response")
        if self.clock() > dispute.evidence_due_by:
            raise DisputeEvidenceRejected("Evidence due date has passed")
        if not evidence.is_substantive():
            raise DisputeEvidenceRejected("Evidence must include substantive content")

        await self._call_gateway(
            "dispute_evidence",
            lambda: self.gateway.submit_dispute_evidence(dispute.id, evidence.model_dump(exclude_none=True)),
        )
        dispute.evidence = evidence
        dispute.status = DisputeStatus.UNDER_REVIEW
        dispute.responded_at = self.clock()
        await self.repository.save_dispute(dispute)
        logger.info("dispute_evidence_submitted", dispute_id=dispute_id)
        return dispute

    async def resolve_dispute(self, dispute_id: str, outcome: DisputeOutcomeType) -> Dispute:
        dispute = await self.get_dispute(dispute_id)
        if dispute.status not in ACTIVE_DISPUTE_STATUSES:
            raise InvalidPaymentState(f"Dispute {dispute_id} is already {dispute.status.value}")
        dispute.status = DisputeStatus.WON if outcome == DisputeOutcomeType.WON else DisputeStatus.LOST
        dispute.resolved_at = self.clock()
        await self.repository.save_dispute(dispute)
        logger.info("dispute_resolved", dispute_id=dispute_id, outcome=dispute.status.value)
        return dispute

    # ------------------------------------------------------------------
    # Reporting and lifecycle
    # ------------------------------------------------------------------

    async def get_payment_summary(self, booking_id: str) -> PaymentSummary:
        summary = PaymentSummary(booking_id=booking_id)
        for intent in await self.repository.list_intents_for_booking(booking_id):
            if intent.status in (PaymentIntentStatus.REQUIRES_CAPTURE, PaymentIntentStatus.SUCCEEDED):
                summary.total_authorized_cents += intent.amount_cents
            if intent.status == PaymentIntentStatus.REQUIRES_CAPTURE:
                summary.pending_captures += 1
            summary.total_captured_cents += intent.amount_captured_cents
            for refund in await self.repository.list_refunds(intent.id):
                if refund.status == RefundStatus.SUCCEEDED:
                    summary.total_refunded_cents += refund.amount_cents
                elif refund.status == RefundStatus.PENDING:
                    summary.pending_refunds += 1
            for dispute in await self.repository.list_disputes(intent.id):
                if dispute.status in ACTIVE_DISPUTE_STATUSES:
                    summary.active_disputes += 1
                    summary.total_disputed_cents += dispute.amount_cents
                elif dispute.status == DisputeStatus.LOST:
                    summary.total_disputed_cents += dispute.amount_cents
        summary.net_amount_cents = summary.total_captured_cents - summary.total_refunded_cents
        return summary

    async def shutdown(self) -> None:
        """Cancel background captures and refund processing."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("payment_manager_stopped", cancelled_tasks=len(tasks))
