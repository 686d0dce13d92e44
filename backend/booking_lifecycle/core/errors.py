"""
Error taxonomy for the booking lifecycle.

Every domain failure is a BookingLifecycleError carrying a stable ErrorCode,
a human-readable message, a recovery hint and optional details. The API layer
maps codes to HTTP status (see api/exceptions.py).

Families:
  - ValidationError: bad input shape, out-of-range values, missing reason.
  - PolicyViolation: the operation is disallowed by current rules or timing.
    Carries the complete list of reasons, never just the first one.
  - PaymentFailure: settlement failed, the whole operation was aborted.
  - InventoryConflict: the slot is gone; reports whether money was touched.
  - NotFoundError: unknown booking, intent, refund or dispute.
  - IntegrationError: retryable system faults (gateway timeout, audit write,
    concurrent modification). Always raised with the underlying cause chained.

Manual review is not an error; it is an outcome of a cancellation.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "ERR_VALIDATION"
    REASON_REQUIRED = "ERR_REASON_REQUIRED"
    METADATA_INCOMPLETE = "ERR_METADATA_INCOMPLETE"
    IDEMPOTENCY_MISMATCH = "ERR_IDEMPOTENCY_MISMATCH"
    REFUND_NOT_ALLOWED = "ERR_REFUND_NOT_ALLOWED"

    POLICY_VIOLATION = "ERR_POLICY"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    INVALID_STATUS_TRANSITION = "ERR_STATUS_TRANSITION"
    INVALID_PAYMENT_STATE = "ERR_PAYMENT_STATE"
    DISPUTE_EVIDENCE_REJECTED = "ERR_DISPUTE_EVIDENCE"

    PAYMENT_FAILED = "ERR_PAYMENT_FAILED"
    INVENTORY_CONFLICT = "ERR_INVENTORY_CONFLICT"

    BOOKING_NOT_FOUND = "ERR_BOOKING_NOT_FOUND"
    COURSE_NOT_FOUND = "ERR_COURSE_NOT_FOUND"
    PAYMENT_NOT_FOUND = "ERR_PAYMENT_NOT_FOUND"

    GATEWAY_UNAVAILABLE = "ERR_GATEWAY_UNAVAILABLE"
    AUDIT_WRITE_FAILED = "ERR_AUDIT_WRITE"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"
    REQUEST_IN_PROGRESS = "ERR_REQUEST_IN_PROGRESS"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "The request is invalid",
    ErrorCode.REASON_REQUIRED: "A reason is required for this action",
    ErrorCode.METADATA_INCOMPLETE: "Required audit metadata is missing",
    ErrorCode.IDEMPOTENCY_MISMATCH: "Idempotency key was already used with a different request",
    ErrorCode.REFUND_NOT_ALLOWED: "The refund is not allowed",
    ErrorCode.POLICY_VIOLATION: "The operation is not allowed by the booking rules",
    ErrorCode.RATE_LIMITED: "Too many edits, try again later",
    ErrorCode.INVALID_STATUS_TRANSITION: "The booking cannot move to the requested status",
    ErrorCode.INVALID_PAYMENT_STATE: "The payment is not in a state that allows this operation",
    ErrorCode.DISPUTE_EVIDENCE_REJECTED: "The dispute evidence was rejected",
    ErrorCode.PAYMENT_FAILED: "Payment processing failed",
    ErrorCode.INVENTORY_CONFLICT: "The requested tee time is no longer available",
    ErrorCode.BOOKING_NOT_FOUND: "Booking not found",
    ErrorCode.COURSE_NOT_FOUND: "Course not found",
    ErrorCode.PAYMENT_NOT_FOUND: "Payment record not found",
    ErrorCode.GATEWAY_UNAVAILABLE: "The payment gateway did not respond in time",
    ErrorCode.AUDIT_WRITE_FAILED: "The audit entry could not be written",
    ErrorCode.CONCURRENT_MODIFICATION: "The booking was modified by another request",
    ErrorCode.REQUEST_IN_PROGRESS: "An identical request is still being processed",
}

ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Correct the request and submit again",
    ErrorCode.REASON_REQUIRED: "Provide a written reason",
    ErrorCode.METADATA_INCOMPLETE: "Include the required metadata keys",
    ErrorCode.IDEMPOTENCY_MISMATCH: "Use a new idempotency key for a different request",
    ErrorCode.REFUND_NOT_ALLOWED: "Check the refund limits for this payment",
    ErrorCode.POLICY_VIOLATION: "Review the listed reasons or contact the course",
    ErrorCode.RATE_LIMITED: "Wait for the retry-after period",
    ErrorCode.INVALID_STATUS_TRANSITION: "Check the current booking status",
    ErrorCode.INVALID_PAYMENT_STATE: "Check the current payment status",
    ErrorCode.DISPUTE_EVIDENCE_REJECTED: "Submit substantive evidence before the due date",
    ErrorCode.PAYMENT_FAILED: "Try again or use a different payment method",
    ErrorCode.INVENTORY_CONFLICT: "Choose a different tee time",
    ErrorCode.BOOKING_NOT_FOUND: "Verify the booking ID",
    ErrorCode.COURSE_NOT_FOUND: "Verify the course ID",
    ErrorCode.PAYMENT_NOT_FOUND: "Verify the payment reference",
    ErrorCode.GATEWAY_UNAVAILABLE: "Retry with the same idempotency key",
    ErrorCode.AUDIT_WRITE_FAILED: "Retry with the same idempotency key",
    ErrorCode.CONCURRENT_MODIFICATION: "Reload the booking and retry",
    ErrorCode.REQUEST_IN_PROGRESS: "Retry with the same idempotency key shortly",
}


class BookingLifecycleError(Exception):
    """Base class for all domain errors."""

    default_code = ErrorCode.VALIDATION_FAILED
    retryable = False

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or ERROR_MESSAGES[self.code]
        self.recovery = ERROR_RECOVERY[self.code]
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.code.value,
            "message": self.message,
            "recovery": self.recovery,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(BookingLifecycleError):
    default_code = ErrorCode.VALIDATION_FAILED


class RefundNotAllowed(ValidationError):
    default_code = ErrorCode.REFUND_NOT_ALLOWED


class PolicyViolation(BookingLifecycleError):
    """Operation disallowed by rules or timing; carries every violated reason."""

    default_code = ErrorCode.POLICY_VIOLATION

    def __init__(
        self,
        reasons: list[str],
        warnings: Optional[list[str]] = None,
        retry_after_seconds: Optional[int] = None,
        code: Optional[ErrorCode] = None,
    ):
        self.reasons = list(reasons)
        self.warnings = list(warnings or [])
        self.retry_after_seconds = retry_after_seconds
        details: dict[str, Any] = {"reasons": self.reasons, "warnings": self.warnings}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__("; ".join(self.reasons) or None, code=code, details=details)


class InvalidStatusTransition(PolicyViolation):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            [f"Cannot transition booking from {current} to {requested}"],
            code=ErrorCode.INVALID_STATUS_TRANSITION,
        )


class InvalidPaymentState(PolicyViolation):
    def __init__(self, message: str):
        super().__init__([message], code=ErrorCode.INVALID_PAYMENT_STATE)


class DisputeEvidenceRejected(PolicyViolation):
    def __init__(self, message: str):
        super().__init__([message], code=ErrorCode.DISPUTE_EVIDENCE_REJECTED)


class PaymentFailure(BookingLifecycleError):
    default_code = ErrorCode.PAYMENT_FAILED

    def __init__(
        self,
        message: Optional[str] = None,
        gateway_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.gateway_code = gateway_code
        details = dict(details or {})
        if gateway_code:
            details["gateway_code"] = gateway_code
        super().__init__(message, details=details)


class InventoryConflict(BookingLifecycleError):
    """Slot unavailable. money_touched tells the caller whether any settlement ran."""

    default_code = ErrorCode.INVENTORY_CONFLICT

    def __init__(self, message: Optional[str] = None, money_touched: bool = False):
        self.money_touched = money_touched
        super().__init__(message, details={"money_touched": money_touched})


class NotFoundError(BookingLifecycleError):
    default_code = ErrorCode.BOOKING_NOT_FOUND


class IntegrationError(BookingLifecycleError):
    """Retryable infrastructure failure."""

    default_code = ErrorCode.GATEWAY_UNAVAILABLE
    retryable = True


class GatewayUnavailable(IntegrationError):
    default_code = ErrorCode.GATEWAY_UNAVAILABLE


class AuditWriteError(IntegrationError):
    default_code = ErrorCode.AUDIT_WRITE_FAILED


class ConcurrentModification(IntegrationError):
    default_code = ErrorCode.CONCURRENT_MODIFICATION


class RequestInProgress(IntegrationError):
    default_code = ErrorCode.REQUEST_IN_PROGRESS
