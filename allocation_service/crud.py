import json
import datetime
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .config import settings  # Need this for the topic name
from .intervals import Interval


# --- Resource registry ---

def resource_exists(db: Session, kind: models.ResourceKind, resource_id: int) -> bool:
    """
    True only for an active resource of the given kind.
    """
    return get_resource(db, kind, resource_id) is not None


def get_resource(db: Session, kind: models.ResourceKind, resource_id: int) -> Optional[models.Resource]:
    return db.query(models.Resource).filter(
        models.Resource.id == resource_id,
        models.Resource.kind == kind,
        models.Resource.is_active.is_(True),
    ).first()


def list_active_resources(db: Session, kind: models.ResourceKind, min_capacity: Optional[int] = None):
    """
    Active resources of one kind, smallest first so auto-assignment
    does not hand a ten-seat table to a couple.
    """
    query = db.query(models.Resource).filter(
        models.Resource.kind == kind,
        models.Resource.is_active.is_(True),
    )
    if min_capacity is not None:
        query = query.filter(models.Resource.capacity >= min_capacity)
    return query.order_by(models.Resource.capacity.asc(), models.Resource.id.asc()).all()


def create_resource(db: Session, kind: models.ResourceKind, name: str,
                    capacity: Optional[int] = None, is_active: bool = True) -> models.Resource:
    db_resource = models.Resource(kind=kind, name=name, capacity=capacity, is_active=is_active)
    db.add(db_resource)
    db.commit()
    db.refresh(db_resource)
    return db_resource


def lock_resource(db: Session, kind: models.ResourceKind, resource_id: int) -> Optional[models.Resource]:
    """
    Takes a row lock on the resource for the rest of the transaction.
    Backends without SELECT ... FOR UPDATE (SQLite) ignore the lock clause.
    """
    return db.query(models.Resource).filter(
        models.Resource.id == resource_id,
        models.Resource.kind == kind,
    ).with_for_update().first()


# --- Bookings ---
# None of these commit. The lifecycle owns the transaction.

def fetch_live_bookings(db: Session, kind: models.ResourceKind, resource_id: int) -> list[models.Booking]:
    return db.query(models.Booking).filter(
        models.Booking.resource_kind == kind,
        models.Booking.resource_id == resource_id,
        models.Booking.status.in_(models.LIVE_STATUSES),
    ).order_by(models.Booking.start_time.asc()).all()


def get_booking(db: Session, booking_id: int, kind: Optional[models.ResourceKind] = None,
                populate_existing: bool = False) -> Optional[models.Booking]:
    """
    With populate_existing=True an already loaded booking is overwritten with
    the current row, and None is returned if the row has been deleted.
    """
    query = db.query(models.Booking).filter(models.Booking.id == booking_id)
    if kind is not None:
        query = query.filter(models.Booking.resource_kind == kind)
    if populate_existing:
        query = query.populate_existing()
    return query.first()


def list_bookings(db: Session, kind: models.ResourceKind, resource_id: Optional[int] = None,
                  status: Optional[models.BookingStatus] = None, booked_by: Optional[int] = None,
                  start_from: Optional[datetime.datetime] = None, end_before: Optional[datetime.datetime] = None,
                  skip: int = 0, limit: int = 100):
    """
    Bookings of one kind, earliest first. start_from and end_before bound
    the window the whole booking must fall into.
    """
    query = db.query(models.Booking).filter(models.Booking.resource_kind == kind)
    if resource_id is not None:
        query = query.filter(models.Booking.resource_id == resource_id)
    if status is not None:
        query = query.filter(models.Booking.status == status)
    if booked_by is not None:
        query = query.filter(models.Booking.booked_by == booked_by)
    if start_from is not None:
        query = query.filter(models.Booking.start_time >= start_from)
    if end_before is not None:
        query = query.filter(models.Booking.end_time <= end_before)
    return query.order_by(models.Booking.start_time.asc()).offset(skip).limit(limit).all()


def list_upcoming_bookings(db: Session, kind: models.ResourceKind, now: datetime.datetime):
    return db.query(models.Booking).filter(
        models.Booking.resource_kind == kind,
        models.Booking.status == models.BookingStatus.APPROVED,
        models.Booking.start_time > now,
    ).order_by(models.Booking.start_time.asc()).all()


def insert_booking(db: Session, kind: models.ResourceKind, resource_id: int, interval: Interval,
                   party_size: Optional[int] = None, booked_by: Optional[int] = None,
                   notes: Optional[str] = None) -> models.Booking:
    db_booking = models.Booking(
        resource_kind=kind,
        resource_id=resource_id,
        start_time=interval.start,
        end_time=interval.end,
        status=models.BookingStatus.PENDING,
        party_size=party_size,
        booked_by=booked_by,
        notes=notes,
    )
    db.add(db_booking)
    # Flush so the booking has its ID for the outbox payload
    db.flush()
    return db_booking


def update_booking_status(db: Session, booking: models.Booking, status: models.BookingStatus) -> models.Booking:
    booking.status = status
    db.flush()
    return booking


def update_booking_interval(db: Session, booking: models.Booking, interval: Interval) -> models.Booking:
    # Both columns change in the same UPDATE statement
    booking.start_time = interval.start
    booking.end_time = interval.end
    db.flush()
    return booking


def delete_booking(db: Session, booking: models.Booking):
    db.delete(booking)
    db.flush()


# --- Resource assignments ---

def insert_assignment(db: Session, booking: models.Booking, assignment_kind: models.AssignmentKind,
                      detail: str, quantity: int = 1) -> models.ResourceAssignment:
    db_assignment = models.ResourceAssignment(
        booking_id=booking.id,
        assignment_kind=assignment_kind,
        detail=detail,
        quantity=quantity,
        status=models.AssignmentStatus.REQUESTED,
    )
    db.add(db_assignment)
    db.flush()
    return db_assignment


def get_assignment(db: Session, assignment_id: int,
                   populate_existing: bool = False) -> Optional[models.ResourceAssignment]:
    query = db.query(models.ResourceAssignment).filter(models.ResourceAssignment.id == assignment_id)
    if populate_existing:
        query = query.populate_existing()
    return query.first()


def list_assignments(db: Session, booking_id: int, active_only: bool = False) -> list[models.ResourceAssignment]:
    query = db.query(models.ResourceAssignment).filter(models.ResourceAssignment.booking_id == booking_id)
    if active_only:
        query = query.filter(models.ResourceAssignment.status.in_(models.ACTIVE_ASSIGNMENT_STATUSES))
    return query.order_by(models.ResourceAssignment.id.asc()).all()


def update_assignment_status(db: Session, assignment: models.ResourceAssignment,
                             status: models.AssignmentStatus) -> models.ResourceAssignment:
    assignment.status = status
    db.flush()
    return assignment


# --- Outbox ---

def create_outbox_event(db: Session, booking: models.Booking, event: str,
                        from_status: Optional[models.BookingStatus],
                        to_status: Optional[models.BookingStatus],
                        changed_by: Optional[int] = None) -> models.OutboxEvent:
    """
    Creates a lifecycle event in the outbox table.
    Note: Does NOT commit. The caller commits it together with the booking change.
    """
    # 1. Create the Kafka message payload
    payload = {
        "booking_id": booking.id,
        "resource_kind": booking.resource_kind.value,
        "resource_id": booking.resource_id,
        "event": event,
        "from_status": from_status.value if from_status else None,
        "to_status": to_status.value if to_status else None,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "changed_by": changed_by,
    }

    # 2. Create the outbox event object
    db_outbox_event = models.OutboxEvent(
        topic=settings.KAFKA_BOOKING_TOPIC,
        payload=json.dumps(payload),
        booking_id=booking.id,
        status="PENDING"
    )

    # 3. Add to the session
    db.add(db_outbox_event)
    return db_outbox_event


def get_booking_history(db: Session, booking_id: int) -> list[dict]:
    """
    Lifecycle events recorded for one booking, oldest first.
    """
    events = db.query(models.OutboxEvent).filter(
        models.OutboxEvent.booking_id == booking_id
    ).order_by(models.OutboxEvent.id.asc()).all()
    return [json.loads(event.payload) for event in events]
