"""
Append-only audit table.

Rows are inserted once and never updated; retention cleanup is the only delete.
Indexed for the two hot queries: a booking's history and time-range search.
"""

from sqlalchemy import Column, DateTime, Index, String, Text

from booking_lifecycle.db.base import Base, JSONType


class AuditEntryRecord(Base):
    __tablename__ = "audit_entries"

    id = Column(String(64), primary_key=True)
    booking_id = Column(String(64), nullable=False, index=True)
    action = Column(String(32), nullable=False, index=True)
    actor_id = Column(String(64), nullable=False, index=True)
    actor_name = Column(String(255), nullable=False)
    actor_role = Column(String(16), nullable=False)
    actor_email = Column(String(255), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    changes = Column(JSONType, nullable=False, default=list)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_entries_booking_timestamp", "booking_id", "timestamp"),
    )
