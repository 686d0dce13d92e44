"""
Payment intent, refund and dispute tables.

Refunds and disputes reference an intent by id; the amount invariant
(sum of non-failed refunds <= captured amount) is enforced by the
PaymentManager under a per-intent lock, not by the database.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text

from booking_lifecycle.db.base import Base, JSONType


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    id = Column(String(64), primary_key=True)
    booking_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False)
    payment_method_id = Column(String(64), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    amount_captured_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False)
    description = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    gateway_reference = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    authorization_expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="check_intent_amount_positive"),
        CheckConstraint("amount_captured_cents <= amount_cents", name="check_intent_captured_lte_amount"),
    )


class RefundRecord(Base):
    __tablename__ = "refunds"

    id = Column(String(64), primary_key=True)
    payment_intent_id = Column(String(64), ForeignKey("payment_intents.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    reason = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    description = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="check_refund_amount_positive"),
    )


class DisputeRecord(Base):
    __tablename__ = "disputes"

    id = Column(String(64), primary_key=True)
    payment_intent_id = Column(String(64), ForeignKey("payment_intents.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False)
    evidence = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    evidence_due_by = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
