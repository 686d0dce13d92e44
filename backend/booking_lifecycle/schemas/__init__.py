from booking_lifecycle.schemas.audit import (
    Actor,
    ActorRole,
    AuditAction,
    AuditChange,
    AuditEntry,
    AuditFilter,
    AuditSettings,
    AuditSummary,
)
from booking_lifecycle.schemas.booking import (
    AddOn,
    Booking,
    BookingStatus,
    CustomerInfo,
    PaymentStatus,
)
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.edit import (
    BookingChanges,
    CancellationOutcome,
    EditPreview,
    EditResult,
    EditValidationResult,
    PriceCalculation,
    TransferResult,
)
from booking_lifecycle.schemas.payment import (
    Dispute,
    DisputeEvidence,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentPolicies,
    Refund,
    RefundStatus,
)
from booking_lifecycle.schemas.policy import (
    CancellationPolicy,
    CancellationReason,
    CancellationRequest,
    RefundCalculation,
)

__all__ = [
    "Actor", "ActorRole", "AuditAction", "AuditChange", "AuditEntry", "AuditFilter",
    "AuditSettings", "AuditSummary",
    "AddOn", "Booking", "BookingStatus", "CustomerInfo", "PaymentStatus",
    "Course", "CourseEditRules",
    "BookingChanges", "CancellationOutcome", "EditPreview", "EditResult",
    "EditValidationResult", "PriceCalculation", "TransferResult",
    "Dispute", "DisputeEvidence", "PaymentIntent", "PaymentIntentStatus",
    "PaymentPolicies", "Refund", "RefundStatus",
    "CancellationPolicy", "CancellationReason", "CancellationRequest", "RefundCalculation",
]
