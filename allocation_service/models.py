from enum import Enum as PyEnum
import datetime

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, TIMESTAMP,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# --- ENUM for the pool a booking draws from ---
class ResourceKind(PyEnum):
    TABLE = "TABLE"
    HALL = "HALL"
    STAFF = "STAFF"


class BookingStatus(PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Only these bookings hold their resource
LIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED)


class AssignmentKind(PyEnum):
    EQUIPMENT = "EQUIPMENT"
    STAFF_ROLE = "STAFF_ROLE"


class AssignmentStatus(PyEnum):
    REQUESTED = "REQUESTED"
    CONFIRMED = "CONFIRMED"
    IN_USE = "IN_USE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


ACTIVE_ASSIGNMENT_STATUSES = (
    AssignmentStatus.REQUESTED,
    AssignmentStatus.CONFIRMED,
    AssignmentStatus.IN_USE,
)


class Resource(Base):
    """A bookable table, banquet hall or staff member."""

    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(SQLEnum(ResourceKind), nullable=False, index=True)
    name = Column(String(120), nullable=False)

    # Seats for tables, guests for halls. Staff members have no capacity.
    capacity = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    resource_kind = Column(SQLEnum(ResourceKind), nullable=False)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)

    # Guests for tables and halls, unused for staff shifts
    party_size = Column(Integer, nullable=True)

    # User id from the auth service's token. No direct DB relationship.
    booked_by = Column(Integer, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    assignments = relationship(
        "ResourceAssignment",
        back_populates="booking",
        cascade="all, delete-orphan",
    )

    # The conflict checker always filters on these three columns
    __table_args__ = (
        Index("ix_bookings_resource_status", "resource_kind", "resource_id", "status"),
    )


class ResourceAssignment(Base):
    """Equipment or a staff role committed to an approved booking."""

    __tablename__ = "resource_assignments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)

    assignment_kind = Column(SQLEnum(AssignmentKind), nullable=False)
    detail = Column(String(255), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    status = Column(SQLEnum(AssignmentStatus), default=AssignmentStatus.REQUESTED, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="assignments")


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    # Sent rows are kept as the booking's audit trail
    booking_id = Column(Integer, nullable=True, index=True)

    created_at = Column(TIMESTAMP, default=utcnow)

    # An index on 'status' will make the poller's query much faster
    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
