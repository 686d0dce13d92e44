"""
Audit trail schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_UPDATED = "booking_updated"
    BOOKING_CANCELED = "booking_canceled"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    STATUS_CHANGED = "status_changed"
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_DISPUTED = "payment_disputed"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    NO_SHOW_MARKED = "no_show_marked"
    NOTES_ADDED = "notes_added"
    CUSTOMER_CONTACTED = "customer_contacted"
    DISPUTE_RESOLVED = "dispute_resolved"
    POLICY_OVERRIDE = "policy_override"
    DATA_EXPORTED = "data_exported"
    DATA_DELETED = "data_deleted"


REASON_REQUIRED_ACTIONS = frozenset({
    AuditAction.BOOKING_CANCELED,
    AuditAction.POLICY_OVERRIDE,
    AuditAction.DATA_DELETED,
    AuditAction.DISPUTE_RESOLVED,
})

CRITICAL_ACTIONS = frozenset({
    AuditAction.BOOKING_CANCELED,
    AuditAction.PAYMENT_REFUNDED,
    AuditAction.PAYMENT_DISPUTED,
    AuditAction.POLICY_OVERRIDE,
    AuditAction.DATA_DELETED,
})

# Minimum metadata keys validated at write time
REQUIRED_METADATA_KEYS: dict[AuditAction, tuple[str, ...]] = {
    AuditAction.DATA_EXPORTED: ("record_count", "filter"),
    AuditAction.PAYMENT_REFUNDED: ("refund_id", "amount_cents"),
    AuditAction.PAYMENT_PROCESSED: ("payment_intent_id", "amount_cents"),
    AuditAction.PAYMENT_DISPUTED: ("dispute_id",),
    AuditAction.STATUS_CHANGED: ("from_status", "to_status"),
}

SYSTEM_BOOKING_ID = "system"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """Caller context supplied by the surrounding application."""

    id: str
    name: str = ""
    role: ActorRole = ActorRole.CUSTOMER
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.STAFF, ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(id="system", name="System", role=ActorRole.SYSTEM)


class PerformedBy(BaseModel):
    id: str
    name: str
    role: ActorRole
    email: Optional[str] = None

    model_config = {"frozen": True}


class AuditChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    field_type: str = "string"

    model_config = {"frozen": True}


class AuditEntry(BaseModel):
    id: str
    booking_id: str
    action: AuditAction
    performed_by: PerformedBy
    timestamp: datetime
    changes: list[AuditChange] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"frozen": True, "from_attributes": True}


class AuditFilter(BaseModel):
    booking_id: Optional[str] = None
    performed_by: Optional[str] = None
    action: Optional[list[AuditAction]] = None
    role: Optional[list[ActorRole]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    field: Optional[str] = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.booking_id and entry.booking_id != self.booking_id:
            return False
        if self.performed_by and entry.performed_by.id != self.performed_by:
            return False
        if self.action and entry.action not in self.action:
            return False
        if self.role and entry.performed_by.role not in self.role:
            return False
        if self.date_from and entry.timestamp < self.date_from:
            return False
        if self.date_to and entry.timestamp > self.date_to:
            return False
        if self.field and not any(c.field == self.field for c in entry.changes):
            return False
        return True


class ActorActivity(BaseModel):
    id: str
    name: str
    count: int


class AuditSummary(BaseModel):
    total_actions: int
    actions_by_type: dict[str, int]
    top_performers: list[ActorActivity]
    recent_activity: list[AuditEntry]
    critical_actions: list[AuditEntry]


class AuditExport(BaseModel):
    content: str
    record_count: int
    audit_entry_id: str


class AuditSettings(BaseModel):
    retention_days: int = 2555
    mass_export_threshold: int = 100
    search_limit: int = 100
    export_limit: int = 10000
    summary_top_performers: int = 10
    summary_recent: int = 20
    summary_critical: int = 50
    record_purges: bool = False

    model_config = {"frozen": True}
