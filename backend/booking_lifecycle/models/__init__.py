from booking_lifecycle.models.audit import AuditEntryRecord
from booking_lifecycle.models.booking import BookingRecord
from booking_lifecycle.models.payment import DisputeRecord, PaymentIntentRecord, RefundRecord

__all__ = [
    "AuditEntryRecord", "BookingRecord",
    "DisputeRecord", "PaymentIntentRecord", "RefundRecord",
]
