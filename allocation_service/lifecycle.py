"""
Booking lifecycle state machine.

PENDING  -> APPROVED | REJECTED | CANCELLED
APPROVED -> COMPLETED | NO_SHOW | CANCELLED

Every transition runs inside the booking's resource critical section:
the in-process resource lock is held, the resource row is locked, the
booking is re-read, and the change plus its outbox event are committed
together. Anything that fails inside is rolled back before it propagates.
"""
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import crud, models
from .conflicts import find_conflict
from .exceptions import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
)
from .intervals import Interval
from .locking import ResourceLockManager

logger = logging.getLogger("allocation_service")

Status = models.BookingStatus

TRANSITIONS = {
    Status.PENDING: {Status.APPROVED, Status.REJECTED, Status.CANCELLED},
    Status.APPROVED: {Status.COMPLETED, Status.NO_SHOW, Status.CANCELLED},
    Status.REJECTED: set(),
    Status.CANCELLED: set(),
    Status.COMPLETED: set(),
    Status.NO_SHOW: set(),
}

# Verb used in error messages for each target state
ACTIONS = {
    Status.APPROVED: "approve",
    Status.REJECTED: "reject",
    Status.CANCELLED: "cancel",
    Status.COMPLETED: "complete",
    Status.NO_SHOW: "mark as no-show",
}


def is_terminal(status: models.BookingStatus) -> bool:
    return not TRANSITIONS[status]


class BookingLifecycle:
    """
    Moves bookings between states, re-validating conflicts where a booking
    starts (or keeps) holding its resource.

    When resource_kind is given, bookings of other kinds are invisible to
    this instance and report as not found.
    """

    def __init__(self, lock_manager: ResourceLockManager, resource_kind: Optional[models.ResourceKind] = None):
        self.lock_manager = lock_manager
        self.resource_kind = resource_kind

    # --- Queries ---

    def get(self, db: Session, booking_id: int) -> models.Booking:
        booking = crud.get_booking(db, booking_id, self.resource_kind)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    def reload(self, db: Session, booking_id: int) -> models.Booking:
        """
        Current row of the booking, read again inside the critical section.
        """
        booking = crud.get_booking(db, booking_id, self.resource_kind, populate_existing=True)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    # --- Transaction plumbing ---

    @contextmanager
    def critical_section(self, db: Session, resource_kind: models.ResourceKind, resource_id: int):
        with self.lock_manager.hold(resource_kind, resource_id):
            try:
                crud.lock_resource(db, resource_kind, resource_id)
                yield
                db.commit()
            except OperationalError as e:
                db.rollback()
                logger.warning(f"Database lock contention on {resource_kind.value} {resource_id}: {e}")
                raise ConcurrencyConflictError(resource_kind, resource_id) from e
            except Exception:
                db.rollback()
                raise

    @staticmethod
    def _raise_conflict(resource_kind, resource_id, conflict: models.Booking):
        raise SchedulingConflictError(
            resource_kind=resource_kind,
            resource_id=resource_id,
            conflicting_booking_id=conflict.id,
            conflicting_interval=Interval.of(conflict),
        )

    # --- Creation ---

    def create(self, db: Session, resource_kind: models.ResourceKind, resource_id: int, interval: Interval,
               party_size: Optional[int] = None, booked_by: Optional[int] = None,
               notes: Optional[str] = None) -> models.Booking:
        """
        Persists a new PENDING booking, or raises SchedulingConflictError
        and persists nothing.
        """
        with self.critical_section(db, resource_kind, resource_id):
            conflict = find_conflict(db, resource_kind, resource_id, interval)
            if conflict is not None:
                logger.warning(f"Rejected new booking on {resource_kind.value} {resource_id}: overlaps booking {conflict.id}")
                self._raise_conflict(resource_kind, resource_id, conflict)

            booking = crud.insert_booking(
                db, resource_kind, resource_id, interval,
                party_size=party_size, booked_by=booked_by, notes=notes,
            )
            crud.create_outbox_event(db, booking, "CREATED", None, Status.PENDING, booked_by)

        db.refresh(booking)
        logger.info(f"Created booking {booking.id} on {resource_kind.value} {resource_id} ({interval.start}-{interval.end})")
        return booking

    # --- State transitions ---

    def _transition(self, db: Session, booking_id: int, target: models.BookingStatus,
                    changed_by: Optional[int] = None) -> models.Booking:
        booking = self.get(db, booking_id)
        resource_kind, resource_id = booking.resource_kind, booking.resource_id

        with self.critical_section(db, resource_kind, resource_id):
            # Re-read under the lock, another request may have moved or deleted it
            booking = self.reload(db, booking_id)
            current = booking.status
            if target not in TRANSITIONS[current]:
                raise InvalidTransitionError(booking.id, current, ACTIONS[target])

            if target == Status.APPROVED:
                # A competing booking may have been committed since this one was created
                conflict = find_conflict(db, resource_kind, resource_id, Interval.of(booking),
                                         exclude_booking_id=booking.id)
                if conflict is not None:
                    logger.warning(f"Cannot approve booking {booking.id}: overlaps booking {conflict.id}")
                    self._raise_conflict(resource_kind, resource_id, conflict)

            crud.update_booking_status(db, booking, target)
            if target in (Status.REJECTED, Status.CANCELLED):
                # The booking owns its assignments
                for assignment in crud.list_assignments(db, booking.id, active_only=True):
                    crud.update_assignment_status(db, assignment, models.AssignmentStatus.CANCELLED)
            crud.create_outbox_event(db, booking, target.value, current, target, changed_by)

        db.refresh(booking)
        logger.info(f"Booking {booking.id}: {current.value} -> {target.value}")
        return booking

    def approve(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._transition(db, booking_id, Status.APPROVED, changed_by)

    def reject(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._transition(db, booking_id, Status.REJECTED, changed_by)

    def cancel(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._transition(db, booking_id, Status.CANCELLED, changed_by)

    def complete(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._transition(db, booking_id, Status.COMPLETED, changed_by)

    def mark_no_show(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> models.Booking:
        return self._transition(db, booking_id, Status.NO_SHOW, changed_by)

    # --- Updates ---

    def reschedule(self, db: Session, booking_id: int, new_interval: Interval,
                   changed_by: Optional[int] = None) -> models.Booking:
        """
        Moves a live booking to new_interval. On conflict the old interval stays.
        """
        booking = self.get(db, booking_id)
        resource_kind, resource_id = booking.resource_kind, booking.resource_id

        with self.critical_section(db, resource_kind, resource_id):
            booking = self.reload(db, booking_id)
            if booking.status not in models.LIVE_STATUSES:
                raise InvalidTransitionError(booking.id, booking.status, "reschedule")

            conflict = find_conflict(db, resource_kind, resource_id, new_interval,
                                     exclude_booking_id=booking.id)
            if conflict is not None:
                logger.warning(f"Cannot reschedule booking {booking.id}: overlaps booking {conflict.id}")
                self._raise_conflict(resource_kind, resource_id, conflict)

            crud.update_booking_interval(db, booking, new_interval)
            crud.create_outbox_event(db, booking, "RESCHEDULED", booking.status, booking.status, changed_by)

        db.refresh(booking)
        logger.info(f"Rescheduled booking {booking.id} to {new_interval.start}-{new_interval.end}")
        return booking

    def delete(self, db: Session, booking_id: int, changed_by: Optional[int] = None) -> Optional[models.Booking]:
        """
        Hard-deletes a PENDING booking and returns None.

        Approved or historical bookings are kept for the record: the request
        becomes a cancel and the cancelled booking is returned.
        """
        booking = self.get(db, booking_id)
        if booking.status != Status.PENDING:
            return self.cancel(db, booking_id, changed_by)

        with self.critical_section(db, booking.resource_kind, booking.resource_id):
            booking = self.reload(db, booking_id)
            if booking.status != Status.PENDING:
                raise InvalidTransitionError(booking.id, booking.status, "delete")
            crud.create_outbox_event(db, booking, "DELETED", Status.PENDING, None, changed_by)
            crud.delete_booking(db, booking)

        logger.info(f"Deleted pending booking {booking_id}")
        return None
