"""
Audit trail endpoints. Everything except a customer's own booking history is staff-only.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from booking_lifecycle.api.dependencies import get_actor, get_container, require_staff
from booking_lifecycle.container import Container
from booking_lifecycle.core.clock import ensure_utc
from booking_lifecycle.schemas.audit import Actor, ActorRole, AuditAction, AuditEntry, AuditFilter, AuditSummary

router = APIRouter(prefix="/audit", tags=["Audit"])


def audit_filter_params(
    booking_id: Optional[str] = Query(None),
    performed_by: Optional[str] = Query(None),
    action: Optional[list[AuditAction]] = Query(None),
    role: Optional[list[ActorRole]] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    field: Optional[str] = Query(None),
) -> AuditFilter:
    return AuditFilter(
        booking_id=booking_id,
        performed_by=performed_by,
        action=action,
        role=role,
        date_from=ensure_utc(date_from) if date_from else None,
        date_to=ensure_utc(date_to) if date_to else None,
        field=field,
    )


@router.get("/bookings/{booking_id}", response_model=list[AuditEntry])
async def booking_history(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    container: Container = Depends(get_container),
):
    """Full history of one booking, newest first."""
    booking = await container.edits.get_booking(booking_id)
    if not actor.is_staff and booking.owner_id != actor.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this booking")
    return await container.audit.get_booking_audit_history(booking_id)


@router.get("/entries", response_model=list[AuditEntry])
async def search_entries(
    audit_filter: AuditFilter = Depends(audit_filter_params),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    return await container.audit.search_audit_entries(audit_filter, limit)


@router.get("/summary", response_model=AuditSummary)
async def audit_summary(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    """Activity summary; defaults to the last 30 days."""
    end = ensure_utc(date_to) if date_to else container.audit.clock()
    start = ensure_utc(date_from) if date_from else end - timedelta(days=30)
    return await container.audit.get_audit_summary(start, end)


@router.get("/export")
async def export_entries(
    audit_filter: AuditFilter = Depends(audit_filter_params),
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    """CSV export. The export itself is recorded as a data_exported entry."""
    export = await container.audit.export_audit_data(audit_filter, actor)
    filename = f"audit-export-{container.audit.clock():%Y%m%d%H%M%S}.csv"
    return Response(
        content=export.content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Audit-Entry-Id": export.audit_entry_id,
            "X-Record-Count": str(export.record_count),
        },
    )


@router.post("/cleanup")
async def cleanup_entries(
    actor: Actor = Depends(require_staff),
    container: Container = Depends(get_container),
):
    removed = await container.audit.cleanup_old_entries(actor)
    return {"removed": removed, "retention_days": container.audit.settings.retention_days}
