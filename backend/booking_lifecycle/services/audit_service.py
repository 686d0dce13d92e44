"""
Audit log: append-only trail of every booking mutation.

Entries are immutable and uniquely identified. Writes are split into
build_entry() (validation, id and timestamp) and append() (storage, metrics,
alerts) so a caller can persist an entry id before writing it and later
re-append the very same entry; append is idempotent by id.

Write-time validation:
  - actions in REASON_REQUIRED_ACTIONS need a non-blank reason
  - actions in REQUIRED_METADATA_KEYS need their minimum metadata keys

Exports audit themselves: every export writes a `data_exported` entry with
the record count and filter used.
"""

import csv
import io
import json
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Optional

from booking_lifecycle.core.clock import Clock, utc_now
from booking_lifecycle.core.errors import (
    AuditWriteError,
    BookingLifecycleError,
    ErrorCode,
    ValidationError,
)
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.core.metrics import audit_purged, record_audit_write
from booking_lifecycle.repositories.interfaces import AuditRepository
from booking_lifecycle.schemas.alert import Alert
from booking_lifecycle.schemas.audit import (
    CRITICAL_ACTIONS,
    REASON_REQUIRED_ACTIONS,
    REQUIRED_METADATA_KEYS,
    SYSTEM_ACTOR,
    SYSTEM_BOOKING_ID,
    ActorActivity,
    Actor,
    AuditAction,
    AuditChange,
    AuditEntry,
    AuditExport,
    AuditFilter,
    AuditSettings,
    AuditSummary,
    PerformedBy,
)
from booking_lifecycle.services.alerts import AlertDispatcher

logger = get_logger(__name__)

EXPORT_HEADER = [
    "ID", "Booking ID", "Action", "Performed By", "Role",
    "Timestamp", "Changes", "Reason", "Notes", "IP Address",
]

ACTION_LABELS: dict[AuditAction, str] = {
    AuditAction.BOOKING_CREATED: "Booking Created",
    AuditAction.BOOKING_UPDATED: "Booking Updated",
    AuditAction.BOOKING_CANCELED: "Booking Canceled",
    AuditAction.BOOKING_RESCHEDULED: "Booking Rescheduled",
    AuditAction.STATUS_CHANGED: "Status Changed",
    AuditAction.PAYMENT_PROCESSED: "Payment Processed",
    AuditAction.PAYMENT_REFUNDED: "Payment Refunded",
    AuditAction.PAYMENT_DISPUTED: "Payment Disputed",
    AuditAction.CHECK_IN: "Checked In",
    AuditAction.CHECK_OUT: "Checked Out",
    AuditAction.NO_SHOW_MARKED: "Marked No-Show",
    AuditAction.NOTES_ADDED: "Notes Added",
    AuditAction.CUSTOMER_CONTACTED: "Customer Contacted",
    AuditAction.DISPUTE_RESOLVED: "Dispute Resolved",
    AuditAction.POLICY_OVERRIDE: "Policy Override",
    AuditAction.DATA_EXPORTED: "Data Exported",
    AuditAction.DATA_DELETED: "Data Deleted",
}


def field_type_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value)
            return "date"
        except ValueError:
            return "string"
    return "string"


def detect_changes(old: dict[str, Any], new: dict[str, Any], fields: Optional[list[str]] = None) -> list[AuditChange]:
    """Field-level diff between two JSON-compatible snapshots."""
    keys = fields if fields is not None else sorted(set(old) | set(new))
    changes = []
    for key in keys:
        old_value, new_value = old.get(key), new.get(key)
        if old_value != new_value:
            changes.append(AuditChange(
                field=key,
                old_value=old_value,
                new_value=new_value,
                field_type=field_type_of(new_value if new_value is not None else old_value),
            ))
    return changes


def format_change(change: AuditChange) -> str:
    def show(value: Any) -> str:
        if value is None:
            return "(empty)"
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return str(value)

    return f"{change.field}: {show(change.old_value)} -> {show(change.new_value)}"


def action_label(action: AuditAction) -> str:
    return ACTION_LABELS.get(action, action.value)


def is_critical_action(action: AuditAction) -> bool:
    return action in CRITICAL_ACTIONS


class AuditService:
    def __init__(
        self,
        repository: AuditRepository,
        alerts: AlertDispatcher,
        settings: Optional[AuditSettings] = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.alerts = alerts
        self.settings = settings or AuditSettings()
        self.clock = clock

    def build_entry(
        self,
        booking_id: str,
        action: AuditAction,
        actor: Actor,
        changes: Optional[list[AuditChange]] = None,
        metadata: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AuditEntry:
        if action in REASON_REQUIRED_ACTIONS and not (reason or "").strip():
            raise ValidationError(
                f"A reason is required for {action.value}",
                code=ErrorCode.REASON_REQUIRED,
                details={"action": action.value},
            )
        metadata = dict(metadata or {})
        missing = [key for key in REQUIRED_METADATA_KEYS.get(action, ()) if key not in metadata]
        if missing:
            raise ValidationError(
                f"Missing metadata for {action.value}: {', '.join(missing)}",
                code=ErrorCode.METADATA_INCOMPLETE,
                details={"action": action.value, "missing": missing},
            )
        return AuditEntry(
            id=f"audit_{uuid.uuid4().hex}",
            booking_id=booking_id,
            action=action,
            performed_by=PerformedBy(
                id=actor.id, name=actor.name or actor.id, role=actor.role, email=actor.email
            ),
            timestamp=self.clock(),
            changes=list(changes or []),
            metadata=metadata,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            reason=reason,
            notes=notes,
        )

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Store a pre-built entry. Re-appending the same id is a no-op."""
        try:
            inserted = await self.repository.append(entry)
        except BookingLifecycleError:
            raise
        except Exception as e:
            logger.error("audit_write_failed", audit_entry_id=entry.id, action=entry.action.value, error=str(e))
            raise AuditWriteError(details={"audit_entry_id": entry.id, "action": entry.action.value}) from e

        if not inserted:
            logger.info("audit_entry_already_written", audit_entry_id=entry.id)
            return entry

        record_audit_write(entry.action.value)
        logger.info(
            "audit_entry_written",
            audit_entry_id=entry.id,
            booking_id=entry.booking_id,
            action=entry.action.value,
            performed_by=entry.performed_by.id,
        )
        if is_critical_action(entry.action):
            self.alerts.publish(Alert(
                alert_type="critical_action",
                message=f"{action_label(entry.action)} by {entry.performed_by.name}",
                booking_id=entry.booking_id,
                audit_entry_id=entry.id,
                details={"action": entry.action.value, "reason": entry.reason},
                created_at=entry.timestamp,
            ))
        return entry

    async def log_action(
        self,
        booking_id: str,
        action: AuditAction,
        actor: Actor,
        changes: Optional[list[AuditChange]] = None,
        metadata: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AuditEntry:
        entry = self.build_entry(booking_id, action, actor, changes, metadata, reason, notes)
        return await self.append(entry)

    async def get_booking_audit_history(self, booking_id: str) -> list[AuditEntry]:
        return await self.repository.search(AuditFilter(booking_id=booking_id), self.settings.export_limit)

    async def search_audit_entries(self, audit_filter: AuditFilter, limit: Optional[int] = None) -> list[AuditEntry]:
        cap = min(limit or self.settings.search_limit, self.settings.export_limit)
        return await self.repository.search(audit_filter, cap)

    async def get_audit_summary(self, date_from: datetime, date_to: datetime) -> AuditSummary:
        entries = await self.repository.search(
            AuditFilter(date_from=date_from, date_to=date_to), self.settings.export_limit
        )
        by_action = Counter(e.action.value for e in entries)
        by_actor: Counter = Counter()
        names: dict[str, str] = {}
        for entry in entries:
            by_actor[entry.performed_by.id] += 1
            names.setdefault(entry.performed_by.id, entry.performed_by.name)

        return AuditSummary(
            total_actions=len(entries),
            actions_by_type=dict(by_action),
            top_performers=[
                ActorActivity(id=actor_id, name=names[actor_id], count=count)
                for actor_id, count in by_actor.most_common(self.settings.summary_top_performers)
            ],
            recent_activity=entries[: self.settings.summary_recent],
            critical_actions=[e for e in entries if is_critical_action(e.action)][: self.settings.summary_critical],
        )

    async def export_audit_data(self, audit_filter: AuditFilter, actor: Actor) -> AuditExport:
        entries = await self.repository.search(audit_filter, self.settings.export_limit)

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(EXPORT_HEADER)
        for entry in entries:
            changes = json.dumps([
                {"field": c.field, "oldValue": c.old_value, "newValue": c.new_value}
                for c in entry.changes
            ])
            writer.writerow([
                entry.id,
                entry.booking_id,
                entry.action.value,
                entry.performed_by.name,
                entry.performed_by.role.value,
                entry.timestamp.isoformat(),
                changes,
                entry.reason or "",
                entry.notes or "",
                entry.ip_address or "",
            ])

        record = await self.log_action(
            SYSTEM_BOOKING_ID,
            AuditAction.DATA_EXPORTED,
            actor,
            metadata={
                "record_count": len(entries),
                "filter": audit_filter.model_dump(mode="json", exclude_none=True),
            },
        )
        if len(entries) > self.settings.mass_export_threshold:
            self.alerts.publish(Alert(
                alert_type="mass_data_export",
                message=f"{actor.name or actor.id} exported {len(entries)} audit records",
                audit_entry_id=record.id,
                details={"record_count": len(entries), "threshold": self.settings.mass_export_threshold},
                created_at=record.timestamp,
            ))
        return AuditExport(content=buffer.getvalue(), record_count=len(entries), audit_entry_id=record.id)

    async def cleanup_old_entries(self, actor: Actor = SYSTEM_ACTOR) -> int:
        """Purge entries older than the retention horizon."""
        cutoff = self.clock() - timedelta(days=self.settings.retention_days)
        removed = await self.repository.delete_older_than(cutoff)
        audit_purged.inc(removed)
        logger.info(
            "audit_entries_purged",
            removed=removed,
            cutoff=cutoff.isoformat(),
            retention_days=self.settings.retention_days,
        )
        if removed and self.settings.record_purges:
            await self.log_action(
                SYSTEM_BOOKING_ID,
                AuditAction.DATA_DELETED,
                actor,
                metadata={"removed": removed, "cutoff": cutoff.isoformat()},
                reason=f"Retention policy: entries older than {self.settings.retention_days} days",
            )
        return removed
