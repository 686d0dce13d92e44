"""
Booking table.

Key design decisions:
- version column backs optimistic locking (UPDATE ... WHERE version = :expected)
- add_ons and customer_info are stored as JSON documents; they are always read
  and written together with the booking
- status values are constrained to the booking status table
"""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from booking_lifecycle.db.base import Base, JSONType, TimestampMixin
from booking_lifecycle.schemas.booking import BookingStatus

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in BookingStatus)


class BookingRecord(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    course_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=BookingStatus.CONFIRMED.value)
    tee_datetime = Column(DateTime(timezone=True), nullable=False, index=True)
    number_of_players = Column(Integer, nullable=False)
    add_ons = Column(JSONType, nullable=False, default=list)
    total_amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    payment_intent_id = Column(String(64), nullable=False)
    payment_method_id = Column(String(64), nullable=False)
    payment_status = Column(String(32), nullable=False)
    customer_info = Column(JSONType, nullable=False)
    reschedules_used = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("number_of_players > 0", name="check_booking_players_positive"),
        CheckConstraint("total_amount_cents >= 0", name="check_booking_total_non_negative"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="check_booking_status"),
    )

    def __repr__(self) -> str:
        return f"<BookingRecord(id={self.id}, course={self.course_id}, status={self.status}, v={self.version})>"
