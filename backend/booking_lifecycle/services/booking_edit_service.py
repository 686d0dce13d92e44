"""
Booking edit orchestrator.

Coordinates validation, pricing, payment settlement, inventory and audit for
every post-creation change to a booking.

COMMIT STRATEGY: Compensating Actions
=====================================

Problem:
  An edit touches three independent systems: money (payment gateway), slots
  (inventory collaborator) and the booking record. The stores only offer
  single-record writes, so there is no transaction spanning all three.

Solution:
  Order the steps so each failure has a cheap, synchronous undo, and run the
  undo before the caller sees the error.

  1. Re-validate under a per-booking lock; consume one rate-limit slot.
  2. Settle (phase 1): authorize a hold for a charge, or check can_refund()
     for a refund. When the booking's own payment is still only authorized,
     a refund becomes a smaller capture instead. Failure -> PaymentFailure,
     nothing was touched.
  3. Inventory: release the old slot and reserve the new one. Failure ->
     re-reserve the old slot, release the hold -> InventoryConflict with
     money_touched=False.
  4. Settle (phase 2): capture the hold, capture the reduced amount, or
     issue the refund and wait for it.
     Failure -> revert inventory, release the hold -> PaymentFailure.
  5. Persist the booking with an optimistic version check. Conflict ->
     revert inventory, refund the capture -> ConcurrentModification. A
     settled refund or reduced capture cannot be undone: a cancellation is
     written again onto the current version, an edit is logged for
     reconciliation.
  6. Store the idempotency record (including the pre-built audit entry),
     then append exactly one audit entry.

  A crash between steps can still strand a hold or a slot; the hold expires
  on its own and slots are reconciled by the inventory owner. With a store
  that supports transactions, steps 3-6 should move into one transaction.

IDEMPOTENCY
===========

Commits take a caller-supplied key. The request is fingerprinted
(operation, booking, actor, payload). Same key and fingerprint after
completion returns the stored result without side effects and re-appends
the stored audit entry (a no-op unless the first append failed). Same key
with a different fingerprint is a ValidationError; a concurrent duplicate
still in flight gets RequestInProgress (retryable).
"""

import asyncio
import hashlib
import json
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from booking_lifecycle.core.clock import Clock, ensure_utc, utc_now
from booking_lifecycle.core.errors import (
    BookingLifecycleError,
    ConcurrentModification,
    ErrorCode,
    InventoryConflict,
    NotFoundError,
    PaymentFailure,
    PolicyViolation,
    RequestInProgress,
    ValidationError,
)
from booking_lifecycle.core.locks import KeyedLocks
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import compensations, edit_latency, idempotent_replays, record_edit_attempt
from booking_lifecycle.core.money import format_cents
from booking_lifecycle.repositories.interfaces import (
    BookingRepository,
    CourseRepository,
    IdempotencyState,
    IdempotencyStore,
    InventoryStore,
)
from booking_lifecycle.schemas.audit import Actor, AuditAction, AuditChange, AuditEntry
from booking_lifecycle.schemas.booking import (
    EDITABLE_STATUSES,
    Booking,
    BookingStatus,
    CustomerInfo,
    PaymentStatus,
    can_transition,
)
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.edit import (
    BookingChanges,
    CancellationOutcome,
    CancellationOutcomeStatus,
    DisputeOutcome,
    EditPreview,
    EditResult,
    EditValidationResult,
    PolicyInfo,
    PriceCalculation,
    TransferResult,
)
from booking_lifecycle.schemas.payment import (
    DisputeOutcomeType,
    DisputeReason,
    PaymentIntent,
    PaymentIntentStatus,
    Refund,
    RefundReason,
    RefundStatus,
)
from booking_lifecycle.schemas.policy import CancellationReason, CancellationRequest
from booking_lifecycle.services.audit_service import AuditService, detect_changes
from booking_lifecycle.services.payment_manager import PaymentManager
from booking_lifecycle.services.policy_engine import CancellationPolicyService, hours_until, select_tier
from booking_lifecycle.services.pricing import (
    apply_add_on_changes,
    calculate_edit_price,
    is_reschedule,
    unknown_add_ons,
)
from booking_lifecycle.services.rate_limiter import EditRateLimiter, rate_limit_message

logger = get_logger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

AUDITED_FIELDS = [
    "owner_id",
    "status",
    "tee_datetime",
    "number_of_players",
    "add_ons",
    "total_amount_cents",
    "payment_status",
    "customer_info",
    "reschedules_used",
]

REFUND_REASON_FOR_CANCELLATION = {
    CancellationReason.WEATHER: RefundReason.WEATHER,
    CancellationReason.COURSE_CLOSURE: RefundReason.WEATHER,
    CancellationReason.MAINTENANCE: RefundReason.MAINTENANCE,
    CancellationReason.OVERBOOKING: RefundReason.OVERBOOKING,
}

STATUS_AUDIT_ACTIONS = {
    BookingStatus.CHECKED_IN: AuditAction.CHECK_IN,
    BookingStatus.COMPLETED: AuditAction.CHECK_OUT,
    BookingStatus.NO_SHOW: AuditAction.NO_SHOW_MARKED,
}


def _fingerprint(operation: str, booking_id: str, actor_id: str, payload: Any) -> str:
    raw = json.dumps(
        {"operation": operation, "booking_id": booking_id, "actor_id": actor_id, "payload": payload},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(raw.encode()).hexdigest()


def _snapshot(booking: Booking) -> dict[str, Any]:
    return booking.model_dump(mode="json", include=set(AUDITED_FIELDS))


def diff_bookings(old: Booking, new: Booking) -> list[AuditChange]:
    return detect_changes(_snapshot(old), _snapshot(new), AUDITED_FIELDS)


class BookingEditService:
    def __init__(
        self,
        bookings: BookingRepository,
        courses: CourseRepository,
        inventory: InventoryStore,
        payments: PaymentManager,
        policy_engine: CancellationPolicyService,
        audit: AuditService,
        rate_limiter: EditRateLimiter,
        idempotency: IdempotencyStore,
        clock: Clock = utc_now,
        refund_wait_timeout_seconds: float = 5.0,
        idempotency_ttl_seconds: int = 86400,
    ):
        self.bookings = bookings
        self.courses = courses
        self.inventory = inventory
        self.payments = payments
        self.policy_engine = policy_engine
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.clock = clock
        self.refund_wait_timeout_seconds = refund_wait_timeout_seconds
        self.idempotency_ttl_seconds = idempotency_ttl_seconds
        self._booking_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str) -> Booking:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def get_course(self, course_id: str) -> Course:
        course = await self.courses.get_course(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", code=ErrorCode.COURSE_NOT_FOUND)
        return course

    def _hours_until(self, moment: datetime) -> float:
        return (ensure_utc(moment) - self.clock()).total_seconds() / 3600

    # ------------------------------------------------------------------
    # Validation and preview
    # ------------------------------------------------------------------

    async def validate_edit(
        self,
        booking: Booking,
        course: Course,
        changes: BookingChanges,
        actor_id: str,
        rules: Optional[CourseEditRules] = None,
    ) -> EditValidationResult:
        """Run every check and collect all reasons and warnings."""
        rules = rules or await self.courses.get_edit_rules(course.id)
        reasons: list[str] = []
        warnings: list[str] = []
        retry_after = None

        if changes.is_empty():
            reasons.append("No changes requested")

        if booking.status not in EDITABLE_STATUSES:
            reasons.append(f"Booking cannot be modified in status {booking.status.value}")

        hours_left = self._hours_until(booking.tee_datetime)
        if hours_left <= 0:
            reasons.append("Tee time has already passed")
        elif hours_left < rules.edit_lock_hours:
            reasons.append(f"Changes are not allowed within {rules.edit_lock_hours} hours of tee time")

        decision = await self.rate_limiter.check(actor_id, rules)
        if not decision.allowed:
            reasons.append(rate_limit_message(decision))
            retry_after = decision.retry_after_seconds

        rescheduling = is_reschedule(booking, changes)
        if rescheduling and booking.reschedules_used >= rules.max_reschedules_per_booking:
            reasons.append(f"Maximum number of reschedules ({rules.max_reschedules_per_booking}) reached")

        new_players = changes.number_of_players or booking.number_of_players
        if changes.number_of_players is not None:
            if not course.min_players <= new_players <= course.max_players:
                reasons.append(
                    f"Number of players must be between {course.min_players} and {course.max_players}"
                )
            elif new_players < booking.number_of_players and hours_left < rules.min_players_reduction_hours:
                warnings.append(
                    f"Removing players within {rules.min_players_reduction_hours} hours of tee time refunds "
                    f"{rules.player_reduction_refund_percent_late}% of the removed seats"
                )

        new_date_ok = True
        if rescheduling:
            hours_to_new = self._hours_until(changes.tee_datetime)
            if hours_to_new <= 0:
                reasons.append("New tee time must be in the future")
                new_date_ok = False
            elif hours_to_new < course.min_lead_time_hours:
                reasons.append(f"New tee time must be at least {course.min_lead_time_hours} hours from now")
                new_date_ok = False

        if rescheduling and new_date_ok:
            if not await self.inventory.check_capacity(course.id, changes.tee_datetime, new_players):
                reasons.append(f"Requested tee time does not have capacity for {new_players} players")
        elif not rescheduling and new_players > booking.number_of_players:
            added = new_players - booking.number_of_players
            if not await self.inventory.check_capacity(course.id, booking.tee_datetime, added):
                reasons.append(f"Tee time does not have capacity for {added} more players")

        for add_on_id in unknown_add_ons(booking, course, changes):
            reasons.append(f"Unknown add-on: {add_on_id}")

        if booking.payment_status == PaymentStatus.DISPUTED:
            reasons.append("Booking payment is under dispute")

        return EditValidationResult(
            is_valid=not reasons,
            reasons=reasons,
            warnings=warnings,
            retry_after_seconds=retry_after,
        )

    def _reduction_percent(self, booking: Booking, rules: CourseEditRules) -> int:
        tier = select_tier(rules.player_reduction_tiers(), hours_until(booking.tee_datetime, self.clock()))
        return tier.refund_percent if tier else rules.player_reduction_refund_percent_late

    def _price(self, booking: Booking, course: Course, rules: CourseEditRules, changes: BookingChanges) -> PriceCalculation:
        return calculate_edit_price(booking, course, rules, changes, self._reduction_percent(booking, rules))

    def _apply_changes(
        self, booking: Booking, course: Course, changes: BookingChanges, price: PriceCalculation
    ) -> Booking:
        fields: dict[str, Any] = {"total_amount_cents": price.new_amount_cents}
        if changes.number_of_players is not None:
            fields["number_of_players"] = changes.number_of_players
        if changes.add_ons is not None:
            fields["add_ons"] = apply_add_on_changes(booking, course, changes.add_ons)
        if changes.customer_info is not None:
            fields["customer_info"] = booking.customer_info.model_copy(
                update=changes.customer_info.model_dump(exclude_none=True)
            )
        rescheduling = is_reschedule(booking, changes)
        if rescheduling:
            fields["tee_datetime"] = ensure_utc(changes.tee_datetime)
            fields["reschedules_used"] = booking.reschedules_used + 1
        updated = booking.with_changes(**fields)
        if rescheduling:
            updated = updated.transition_to(BookingStatus.RESCHEDULED)
        return updated

    async def policies_info(self, course: Course, rules: Optional[CourseEditRules] = None) -> PolicyInfo:
        rules = rules or await self.courses.get_edit_rules(course.id)
        summary = await self.policy_engine.get_policy_summary(course.id)
        return PolicyInfo(
            cancellation_policy="; ".join(summary),
            reschedule_policy=(
                f"Changes allowed until {rules.edit_lock_hours} hours before tee time. "
                f"{rules.free_reschedules} free reschedule(s), then {format_cents(rules.reschedule_fee_cents)} "
                f"each, up to {rules.max_reschedules_per_booking} per booking. "
                f"Ownership transfers cost {format_cents(rules.transfer_fee_cents)}."
            ),
            refund_policy=(
                f"Removing players {rules.min_players_reduction_hours}+ hours before tee time refunds "
                f"{rules.player_reduction_refund_percent_early}% of their share; later removals refund "
                f"{rules.player_reduction_refund_percent_late}%. Removed add-ons are refunded at the price paid."
            ),
        )

    async def calculate_edit_preview(
        self, booking: Booking, course: Course, changes: BookingChanges, actor_id: str
    ) -> EditPreview:
        rules = await self.courses.get_edit_rules(course.id)
        validation = await self.validate_edit(booking, course, changes, actor_id, rules=rules)
        price = self._price(booking, course, rules, changes)
        diff = []
        if not unknown_add_ons(booking, course, changes):
            diff = diff_bookings(booking, self._apply_changes_unchecked(booking, course, changes, price))
        return EditPreview(
            booking_id=booking.id,
            validation=validation,
            price_calculation=price,
            changes=diff,
            policies=await self.policies_info(course, rules),
        )

    def _apply_changes_unchecked(
        self, booking: Booking, course: Course, changes: BookingChanges, price: PriceCalculation
    ) -> Booking:
        # Previews show the diff even when the status would refuse the transition
        try:
            return self._apply_changes(booking, course, changes, price)
        except PolicyViolation:
            return self._apply_changes(booking, course, changes.model_copy(update={"tee_datetime": None}), price)

    # ------------------------------------------------------------------
    # Idempotent commit plumbing
    # ------------------------------------------------------------------

    async def _run_idempotent(
        self,
        operation: str,
        key: Optional[str],
        fingerprint: str,
        commit: Callable[[], Awaitable[tuple[ResultT, Optional[AuditEntry]]]],
        result_type: type[ResultT],
    ) -> ResultT:
        started = time.perf_counter()
        if key is None:
            result, entry = await commit()
            if entry is not None:
                await self.audit.append(entry)
            return result

        record = await self.idempotency.claim(key, fingerprint, self.idempotency_ttl_seconds)
        if record is not None:
            if record.fingerprint != fingerprint:
                raise ValidationError(code=ErrorCode.IDEMPOTENCY_MISMATCH, details={"idempotency_key": key})
            if record.state != IdempotencyState.COMPLETED:
                raise RequestInProgress(details={"idempotency_key": key})
            stored_entry = record.result.get("audit_entry")
            if stored_entry:
                await self.audit.append(AuditEntry.model_validate(stored_entry))
            idempotent_replays.labels(operation=operation).inc()
            logger.info("idempotent_replay", operation=operation, idempotency_key=key)
            result = result_type.model_validate(record.result["result"])
            return result.model_copy(update={"replayed": True})

        try:
            result, entry = await commit()
        except (Exception, asyncio.CancelledError):
            await self.idempotency.release(key)
            raise

        await self.idempotency.complete(
            key,
            fingerprint,
            {
                "result": result.model_dump(mode="json"),
                "audit_entry": entry.model_dump(mode="json") if entry else None,
            },
            self.idempotency_ttl_seconds,
        )
        if entry is not None:
            await self.audit.append(entry)
        edit_latency.observe(time.perf_counter() - started)
        return result

    async def _release_hold(self, hold: Optional[PaymentIntent]) -> None:
        if hold is None:
            return
        compensations.labels(step="payment").inc()
        try:
            await self.payments.cancel_authorization(hold.id, reason="edit_aborted")
        except BookingLifecycleError as e:
            # The hold expires on its own; the original failure is what the caller needs
            logger.error("hold_release_failed", payment_intent_id=hold.id, error=e.message)

    async def _refund_capture(self, intent: PaymentIntent, reason: str) -> None:
        compensations.labels(step="payment").inc()
        try:
            await self.payments.create_refund(
                intent.id, intent.amount_captured_cents, RefundReason.DUPLICATE,
                description=reason, metadata={"compensation": reason},
            )
        except BookingLifecycleError as e:
            logger.error("compensating_refund_failed", payment_intent_id=intent.id, error=e.message)

    # ------------------------------------------------------------------
    # Inventory reconciliation
    # ------------------------------------------------------------------

    async def _reconcile_inventory(self, old: Booking, new: Booking) -> None:
        course_id = old.course_id
        if new.tee_datetime != old.tee_datetime:
            await self.inventory.release_slot(course_id, old.tee_datetime, old.number_of_players)
            if await self.inventory.reserve_slot(course_id, new.tee_datetime, new.number_of_players):
                return
            compensations.labels(step="inventory").inc()
            if not await self.inventory.reserve_slot(course_id, old.tee_datetime, old.number_of_players):
                logger.error(
                    "inventory_restore_failed",
                    booking_id=old.id,
                    tee_datetime=old.tee_datetime.isoformat(),
                )
            raise InventoryConflict(
                f"Tee time {new.tee_datetime.isoformat()} is no longer available", money_touched=False
            )

        delta = new.number_of_players - old.number_of_players
        if delta > 0 and not await self.inventory.reserve_slot(course_id, old.tee_datetime, delta):
            raise InventoryConflict(f"Tee time no longer has room for {delta} more players", money_touched=False)
        if delta < 0:
            await self.inventory.release_slot(course_id, old.tee_datetime, -delta)

    async def _revert_inventory(self, old: Booking, new: Booking) -> None:
        compensations.labels(step="inventory").inc()
        course_id = old.course_id
        if new.tee_datetime != old.tee_datetime:
            await self.inventory.release_slot(course_id, new.tee_datetime, new.number_of_players)
            restored = await self.inventory.reserve_slot(course_id, old.tee_datetime, old.number_of_players)
        else:
            delta = new.number_of_players - old.number_of_players
            restored = True
            if delta > 0:
                await self.inventory.release_slot(course_id, old.tee_datetime, delta)
            elif delta < 0:
                restored = await self.inventory.reserve_slot(course_id, old.tee_datetime, -delta)
        if not restored:
            logger.error("inventory_restore_failed", booking_id=old.id, tee_datetime=old.tee_datetime.isoformat())

    async def _settle_refund(self, intent_id: str, amount_cents: int, reason: RefundReason, metadata: dict[str, str]) -> Refund:
        refund = await self.payments.create_refund(intent_id, amount_cents, reason, metadata=metadata)
        refund = await self.payments.wait_for_refund(refund.id, self.refund_wait_timeout_seconds)
        if refund.status == RefundStatus.FAILED:
            raise PaymentFailure(
                f"Refund failed: {refund.failure_reason}", details={"refund_id": refund.id}
            )
        return refund

    async def _settle_authorization(self, intent_id: str, keep_cents: int, reason: str) -> PaymentStatus:
        """Capture what the customer still owes on an uncaptured hold; release the hold if nothing."""
        if keep_cents <= 0:
            await self.payments.cancel_authorization(intent_id, reason=reason)
            return PaymentStatus.REFUNDED
        intent = await self.payments.capture_payment(intent_id, keep_cents)
        if keep_cents < intent.amount_cents:
            return PaymentStatus.PARTIALLY_REFUNDED
        return PaymentStatus.CAPTURED

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    async def execute_edit(
        self,
        booking_id: str,
        changes: BookingChanges,
        actor: Actor,
        idempotency_key: str,
    ) -> EditResult:
        if not idempotency_key:
            raise ValidationError("An idempotency key is required to commit an edit")
        fingerprint = _fingerprint("edit", booking_id, actor.id, changes.model_dump(mode="json"))

        async def commit() -> tuple[EditResult, AuditEntry]:
            async with self._booking_locks.hold(booking_id):
                return await self._commit_edit(booking_id, changes, actor, idempotency_key)

        return await self._run_idempotent("edit", idempotency_key, fingerprint, commit, EditResult)

    async def _commit_edit(
        self, booking_id: str, changes: BookingChanges, actor: Actor, idempotency_key: str
    ) -> tuple[EditResult, AuditEntry]:
        booking = await self.get_booking(booking_id)
        course = await self.get_course(booking.course_id)
        rules = await self.courses.get_edit_rules(course.id)

        validation = await self.validate_edit(booking, course, changes, actor.id, rules=rules)
        if not validation.is_valid:
            record_edit_attempt("edit", "rejected")
            raise PolicyViolation(
                validation.reasons,
                validation.warnings,
                retry_after_seconds=validation.retry_after_seconds,
                code=ErrorCode.RATE_LIMITED if validation.retry_after_seconds else None,
            )
        decision = await self.rate_limiter.hit(actor.id, rules)
        if not decision.allowed:
            record_edit_attempt("edit", "rejected")
            raise PolicyViolation(
                [rate_limit_message(decision)],
                retry_after_seconds=decision.retry_after_seconds,
                code=ErrorCode.RATE_LIMITED,
            )

        price = self._price(booking, course, rules, changes)
        updated = self._apply_changes(booking, course, changes, price)
        amount = price.final_amount_cents
        metadata = {"booking_id": booking.id, "idempotency_key": idempotency_key}

        # Settlement phase 1: nothing is touched if this fails
        hold: Optional[PaymentIntent] = None
        refundable = 0
        reduced_capture: Optional[int] = None
        try:
            if amount > 0:
                hold = await self.payments.create_payment_intent(
                    amount, booking.id, booking.owner_id, booking.payment_method_id,
                    currency=booking.currency, description=f"Booking edit {booking.id}", metadata=metadata,
                )
            elif amount < 0:
                intent = await self.payments.get_payment_intent(booking.payment_intent_id)
                if intent.status == PaymentIntentStatus.REQUIRES_CAPTURE:
                    # Nothing captured yet: settle by capturing less instead of refunding
                    reduced_capture = max(0, intent.amount_cents + amount)
                else:
                    eligibility = await self.payments.can_refund(intent, -amount)
                    if not eligibility.allowed:
                        raise PaymentFailure(f"Refund cannot be issued: {eligibility.reason}")
                    refundable = eligibility.max_refund_cents
        except BookingLifecycleError as e:
            record_edit_attempt("edit", "payment_failed")
            logger.warning("edit_settlement_failed", booking_id=booking.id, amount_cents=amount, error=e.message)
            raise

        try:
            await self._reconcile_inventory(booking, updated)
        except InventoryConflict:
            await self._release_hold(hold)
            record_edit_attempt("edit", "inventory_conflict")
            logger.warning("edit_inventory_conflict", booking_id=booking.id)
            raise

        # Settlement phase 2
        refund: Optional[Refund] = None
        try:
            if hold is not None:
                hold = await self.payments.capture_payment(hold.id)
            elif reduced_capture is not None:
                status = await self._settle_authorization(booking.payment_intent_id, reduced_capture, "booking_reduced")
                updated = updated.with_changes(payment_status=status)
            elif amount < 0:
                refund = await self._settle_refund(
                    booking.payment_intent_id, -amount, RefundReason.REQUESTED_BY_CUSTOMER, metadata
                )
                status = PaymentStatus.REFUNDED if -amount >= refundable else PaymentStatus.PARTIALLY_REFUNDED
                updated = updated.with_changes(payment_status=status)
        except BookingLifecycleError as e:
            await self._revert_inventory(booking, updated)
            await self._release_hold(hold)
            record_edit_attempt("edit", "payment_failed")
            logger.warning("edit_settlement_failed", booking_id=booking.id, amount_cents=amount, error=e.message)
            raise

        try:
            saved = await self.bookings.save(updated, expected_version=booking.version)
        except ConcurrentModification:
            await self._revert_inventory(booking, updated)
            if hold is not None:
                await self._refund_capture(hold, "booking changed during edit")
            if refund is not None:
                logger.error("refund_issued_for_stale_booking", booking_id=booking.id, refund_id=refund.id)
            if reduced_capture is not None:
                logger.error(
                    "authorization_settled_for_stale_booking",
                    booking_id=booking.id,
                    payment_intent_id=booking.payment_intent_id,
                    captured_cents=reduced_capture,
                )
            record_edit_attempt("edit", "conflict")
            raise

        diff = diff_bookings(booking, saved)
        action = AuditAction.BOOKING_RESCHEDULED if saved.tee_datetime != booking.tee_datetime else AuditAction.BOOKING_UPDATED
        entry = self.audit.build_entry(
            booking.id,
            action,
            actor,
            changes=diff,
            metadata={
                "price_calculation": price.model_dump(mode="json"),
                "idempotency_key": idempotency_key,
                "payment_intent_id": hold.id if hold else None,
                "refund_id": refund.id if refund else None,
                "warnings": validation.warnings,
            },
        )
        record_edit_attempt("edit", "committed")
        logger.info(
            "edit_committed",
            booking_id=booking.id,
            action=action.value,
            final_amount_cents=amount,
            changed_fields=[c.field for c in diff],
        )
        result = EditResult(
            booking=saved,
            price_calculation=price,
            changes=diff,
            audit_entry_id=entry.id,
            payment_intent_id=hold.id if hold else None,
            refund_id=refund.id if refund else None,
            refund_status=refund.status if refund else None,
            warnings=validation.warnings,
        )
        return result, entry

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def transfer_booking(
        self,
        booking_id: str,
        new_owner_id: str,
        actor: Actor,
        idempotency_key: str,
        new_customer_info: Optional[CustomerInfo] = None,
    ) -> TransferResult:
        if not idempotency_key:
            raise ValidationError("An idempotency key is required to transfer a booking")
        payload = {
            "new_owner_id": new_owner_id,
            "customer_info": new_customer_info.model_dump() if new_customer_info else None,
        }
        fingerprint = _fingerprint("transfer", booking_id, actor.id, payload)

        async def commit() -> tuple[TransferResult, AuditEntry]:
            async with self._booking_locks.hold(booking_id):
                return await self._commit_transfer(booking_id, new_owner_id, actor, new_customer_info)

        return await self._run_idempotent("transfer", idempotency_key, fingerprint, commit, TransferResult)

    async def _commit_transfer(
        self, booking_id: str, new_owner_id: str, actor: Actor, new_customer_info: Optional[CustomerInfo]
    ) -> tuple[TransferResult, AuditEntry]:
        booking = await self.get_booking(booking_id)
        rules = await self.courses.get_edit_rules(booking.course_id)

        reasons = []
        if booking.status not in EDITABLE_STATUSES:
            reasons.append(f"Booking cannot be transferred in status {booking.status.value}")
        hours_left = self._hours_until(booking.tee_datetime)
        if hours_left <= 0:
            reasons.append("Tee time has already passed")
        elif hours_left < rules.edit_lock_hours:
            reasons.append(f"Transfers are not allowed within {rules.edit_lock_hours} hours of tee time")
        if new_owner_id == booking.owner_id:
            reasons.append("Booking already belongs to this customer")
        if booking.payment_status == PaymentStatus.DISPUTED:
            reasons.append("Booking payment is under dispute")
        if reasons:
            record_edit_attempt("transfer", "rejected")
            raise PolicyViolation(reasons)

        fee = rules.transfer_fee_cents
        charge: Optional[PaymentIntent] = None
        if fee > 0:
            try:
                charge = await self.payments.create_payment_intent(
                    fee, booking.id, booking.owner_id, booking.payment_method_id,
                    currency=booking.currency,
                    description=f"Transfer fee for booking {booking.id}",
                    metadata={"booking_id": booking.id, "new_owner_id": new_owner_id},
                    capture_method="automatic",
                )
            except BookingLifecycleError:
                record_edit_attempt("transfer", "payment_failed")
                raise

        updated = booking.with_changes(
            owner_id=new_owner_id,
            customer_info=new_customer_info or booking.customer_info,
        )
        try:
            saved = await self.bookings.save(updated, expected_version=booking.version)
        except ConcurrentModification:
            if charge is not None:
                await self._refund_capture(charge, "booking changed during transfer")
            record_edit_attempt("transfer", "conflict")
            raise

        diff = diff_bookings(booking, saved)
        entry = self.audit.build_entry(
            booking.id,
            AuditAction.BOOKING_UPDATED,
            actor,
            changes=diff,
            metadata={
                "transfer_fee_cents": fee,
                "previous_owner_id": booking.owner_id,
                "new_owner_id": new_owner_id,
                "payment_intent_id": charge.id if charge else None,
            },
        )
        record_edit_attempt("transfer", "committed")
        logger.info("booking_transferred", booking_id=booking.id, new_owner_id=new_owner_id, fee_cents=fee)
        result = TransferResult(
            booking=saved,
            transfer_fee_cents=fee,
            payment_intent_id=charge.id if charge else None,
            changes=diff,
            audit_entry_id=entry.id,
        )
        return result, entry

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_booking(
        self,
        booking_id: str,
        request: CancellationRequest,
        actor: Actor,
        idempotency_key: Optional[str] = None,
    ) -> CancellationOutcome:
        fingerprint = _fingerprint("cancel", booking_id, actor.id, request.model_dump(mode="json"))

        async def commit() -> tuple[CancellationOutcome, Optional[AuditEntry]]:
            async with self._booking_locks.hold(booking_id):
                return await self._commit_cancel(booking_id, request, actor)

        return await self._run_idempotent("cancel", idempotency_key, fingerprint, commit, CancellationOutcome)

    async def _commit_cancel(
        self, booking_id: str, request: CancellationRequest, actor: Actor
    ) -> tuple[CancellationOutcome, Optional[AuditEntry]]:
        booking = await self.get_booking(booking_id)
        rules = await self.courses.get_edit_rules(booking.course_id)

        reasons = self.policy_engine.can_cancel(booking.status, booking.tee_datetime)
        if not actor.is_staff and rules.cancellation_lock_hours > 0:
            if 0 < self._hours_until(booking.tee_datetime) < rules.cancellation_lock_hours:
                reasons.append(
                    f"Cancellations are not allowed within {rules.cancellation_lock_hours} hours of tee time"
                )
        if request.admin_override and not actor.is_staff:
            reasons.append("Only staff can override the cancellation policy")
        if reasons:
            record_edit_attempt("cancel", "rejected")
            raise PolicyViolation(reasons)

        decision = await self.policy_engine.process_cancellation(booking, request)
        calculation = decision.calculation
        if decision.requires_manual_review:
            record_edit_attempt("cancel", "manual_review")
            logger.info("cancellation_manual_review", booking_id=booking.id, reasons=decision.review_reasons)
            outcome = CancellationOutcome(
                status=CancellationOutcomeStatus.MANUAL_REVIEW_REQUIRED,
                booking=booking,
                calculation=calculation,
                review_reasons=decision.review_reasons,
            )
            return outcome, None

        payment_status = booking.payment_status
        refund: Optional[Refund] = None
        captured_cents: Optional[int] = None
        net = calculation.net_refund_cents
        try:
            if booking.payment_status == PaymentStatus.AUTHORIZED:
                # The forfeited share is captured; only the refundable share is released
                intent = await self.payments.get_payment_intent(booking.payment_intent_id)
                captured_cents = max(0, intent.amount_cents - net)
                payment_status = await self._settle_authorization(intent.id, captured_cents, "booking_canceled")
            elif net > 0:
                intent = await self.payments.get_payment_intent(booking.payment_intent_id)
                eligibility = await self.payments.can_refund(intent, net)
                if not eligibility.allowed:
                    raise PaymentFailure(f"Refund cannot be issued: {eligibility.reason}")
                refund = await self._settle_refund(
                    booking.payment_intent_id,
                    net,
                    REFUND_REASON_FOR_CANCELLATION.get(request.reason, RefundReason.CANCELLATION_POLICY),
                    {"booking_id": booking.id, "cancellation_reason": request.reason.value},
                )
                payment_status = (
                    PaymentStatus.REFUNDED if net >= eligibility.max_refund_cents else PaymentStatus.PARTIALLY_REFUNDED
                )
        except BookingLifecycleError as e:
            record_edit_attempt("cancel", "payment_failed")
            logger.warning("cancellation_settlement_failed", booking_id=booking.id, error=e.message)
            raise

        await self.inventory.release_slot(booking.course_id, booking.tee_datetime, booking.number_of_players)

        target = BookingStatus.CANCELED_ADMIN if actor.is_staff else BookingStatus.CANCELED_CUSTOMER
        updated = booking.with_changes(payment_status=payment_status).transition_to(target)
        try:
            saved = await self.bookings.save(updated, expected_version=booking.version)
        except ConcurrentModification:
            if refund is None and captured_cents is None:
                await self.inventory.reserve_slot(booking.course_id, booking.tee_datetime, booking.number_of_players)
                record_edit_attempt("cancel", "conflict")
                raise
            booking, saved = await self._reapply_cancellation(booking, payment_status, target)

        entry = self.audit.build_entry(
            booking.id,
            AuditAction.BOOKING_CANCELED,
            actor,
            changes=diff_bookings(booking, saved),
            metadata={
                "cancellation_reason": request.reason.value,
                "refund_calculation": calculation.model_dump(mode="json"),
                "refund_id": refund.id if refund else None,
                "captured_cents": captured_cents,
                "admin_override": request.admin_override,
            },
            reason=request.reason_details or request.reason.value,
            notes=request.admin_notes,
        )
        record_edit_attempt("cancel", "committed")
        logger.info(
            "booking_canceled",
            booking_id=booking.id,
            status=target.value,
            net_refund_cents=net,
        )
        outcome = CancellationOutcome(
            status=CancellationOutcomeStatus.CANCELED,
            booking=saved,
            calculation=calculation,
            refund_id=refund.id if refund else None,
            refund_status=refund.status if refund else None,
            audit_entry_id=entry.id,
        )
        return outcome, entry

    async def _reapply_cancellation(
        self, original: Booking, payment_status: PaymentStatus, target: BookingStatus, attempts: int = 3
    ) -> tuple[Booking, Booking]:
        """
        Write the cancellation onto whatever version is now current.

        Used once money has already moved, so the conflict cannot be undone.
        The slot released earlier belongs to the version we read first; if the
        other writer moved the booking, the released slot is swapped to match.
        """
        compensations.labels(step="persist").inc()
        released = original
        for _ in range(attempts):
            current = await self.get_booking(original.id)
            if not can_transition(current.status, target):
                break
            if (current.tee_datetime, current.number_of_players) != (released.tee_datetime, released.number_of_players):
                await self.inventory.reserve_slot(released.course_id, released.tee_datetime, released.number_of_players)
                await self.inventory.release_slot(current.course_id, current.tee_datetime, current.number_of_players)
                released = current
            try:
                saved = await self.bookings.save(
                    current.with_changes(payment_status=payment_status).transition_to(target),
                    expected_version=current.version,
                )
            except ConcurrentModification:
                continue
            logger.warning("cancellation_reapplied", booking_id=current.id, version=saved.version)
            return current, saved

        record_edit_attempt("cancel", "conflict")
        logger.error("refund_issued_for_stale_booking", booking_id=original.id, payment_status=payment_status.value)
        raise ConcurrentModification(details={"booking_id": original.id})

    # ------------------------------------------------------------------
    # Administrative status transitions and disputes
    # ------------------------------------------------------------------

    async def transition_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        actor: Actor,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        if new_status in (BookingStatus.CANCELED_ADMIN, BookingStatus.CANCELED_CUSTOMER):
            raise ValidationError("Use the cancellation flow to cancel a booking")
        if new_status == BookingStatus.DISPUTED:
            raise ValidationError("Use the dispute flow to dispute a booking")

        async with self._booking_locks.hold(booking_id):
            booking = await self.get_booking(booking_id)
            if booking.status == BookingStatus.DISPUTED:
                raise ValidationError("Resolve the dispute to move a disputed booking")
            updated = booking.transition_to(new_status)
            if updated is booking:
                raise ValidationError(f"Booking is already {new_status.value}")
            saved = await self.bookings.save(updated, expected_version=booking.version)

            entry = self.audit.build_entry(
                booking.id,
                STATUS_AUDIT_ACTIONS.get(new_status, AuditAction.STATUS_CHANGED),
                actor,
                changes=diff_bookings(booking, saved),
                metadata={"from_status": booking.status.value, "to_status": new_status.value},
                reason=reason,
                notes=notes,
            )
            await self.audit.append(entry)
        logger.info("booking_status_changed", booking_id=booking_id, from_status=booking.status.value, to_status=new_status.value)
        return saved

    async def record_dispute(
        self,
        booking_id: str,
        actor: Actor,
        reason: DisputeReason = DisputeReason.GENERAL,
        amount_cents: Optional[int] = None,
    ) -> DisputeOutcome:
        async with self._booking_locks.hold(booking_id):
            booking = await self.get_booking(booking_id)
            dispute = await self.payments.open_dispute(booking.payment_intent_id, reason, amount_cents)
            updated = booking.with_changes(payment_status=PaymentStatus.DISPUTED)
            if booking.status == BookingStatus.COMPLETED:
                updated = updated.transition_to(BookingStatus.DISPUTED)
            saved = await self.bookings.save(updated, expected_version=booking.version)
            entry = await self.audit.log_action(
                booking.id,
                AuditAction.PAYMENT_DISPUTED,
                actor,
                changes=diff_bookings(booking, saved),
                metadata={
                    "dispute_id": dispute.id,
                    "amount_cents": dispute.amount_cents,
                    "dispute_reason": reason.value,
                    "evidence_due_by": dispute.evidence_due_by.isoformat(),
                },
            )
        return DisputeOutcome(booking=saved, dispute=dispute, audit_entry_id=entry.id)

    async def resolve_dispute(
        self,
        booking_id: str,
        dispute_id: str,
        outcome: DisputeOutcomeType,
        actor: Actor,
        reason: str,
    ) -> DisputeOutcome:
        if not (reason or "").strip():
            raise ValidationError("A reason is required to resolve a dispute", code=ErrorCode.REASON_REQUIRED)
        async with self._booking_locks.hold(booking_id):
            booking = await self.get_booking(booking_id)
            dispute = await self.payments.get_dispute(dispute_id)
            if dispute.payment_intent_id != booking.payment_intent_id:
                raise ValidationError(f"Dispute {dispute_id} does not belong to booking {booking_id}")
            dispute = await self.payments.resolve_dispute(dispute_id, outcome)

            if outcome == DisputeOutcomeType.LOST:
                payment_status = PaymentStatus.REFUNDED
            else:
                summary = await self.payments.get_payment_summary(booking.id)
                payment_status = (
                    PaymentStatus.PARTIALLY_REFUNDED if summary.total_refunded_cents else PaymentStatus.CAPTURED
                )
            updated = booking.with_changes(payment_status=payment_status)
            if booking.status == BookingStatus.DISPUTED:
                updated = updated.transition_to(BookingStatus.COMPLETED)
            saved = await self.bookings.save(updated, expected_version=booking.version)
            entry = await self.audit.log_action(
                booking.id,
                AuditAction.DISPUTE_RESOLVED,
                actor,
                changes=diff_bookings(booking, saved),
                metadata={"dispute_id": dispute.id, "outcome": dispute.status.value},
                reason=reason,
            )
        return DisputeOutcome(booking=saved, dispute=dispute, audit_entry_id=entry.id)

    async def pending_authorizations(self, booking_id: str, warning_days: int = 1) -> list[dict[str, Any]]:
        """Holds on this booking that need capturing or re-authorizing soon."""
        expiring = []
        for intent in await self.payments.repository.list_intents_for_booking(booking_id):
            check = self.payments.is_authorization_expiring(intent, warning_days)
            if check.expiring:
                expiring.append({"payment_intent_id": intent.id, **check.model_dump(mode="json")})
        return expiring
