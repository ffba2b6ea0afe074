import logging
from contextlib import contextmanager

from sqlalchemy.orm import Session

from . import crud, models
from .exceptions import InvalidAssignmentError, InvalidTransitionError, NotApprovedError, NotFoundError
from .lifecycle import BookingLifecycle

logger = logging.getLogger("allocation_service")

AStatus = models.AssignmentStatus

ASSIGNMENT_TRANSITIONS = {
    AStatus.REQUESTED: {AStatus.CONFIRMED, AStatus.CANCELLED},
    AStatus.CONFIRMED: {AStatus.IN_USE, AStatus.CANCELLED},
    AStatus.IN_USE: {AStatus.RETURNED, AStatus.CANCELLED},
    AStatus.RETURNED: set(),
    AStatus.CANCELLED: set(),
}


class AssignmentGate:
    """
    Commits equipment and staff roles to bookings.

    Nothing is attached until the booking is APPROVED. Removing
    attachments is allowed in any booking state and is idempotent.
    """

    def __init__(self, lifecycle: BookingLifecycle):
        self.lifecycle = lifecycle

    def assign(self, db: Session, booking_id: int, assignment_kind: models.AssignmentKind,
               detail: str, quantity: int = 1) -> models.ResourceAssignment:
        detail = (detail or "").strip()
        if not detail:
            raise InvalidAssignmentError("Assignment detail is required")
        if quantity < 1:
            raise InvalidAssignmentError(f"Assignment quantity must be at least 1, got {quantity}")

        booking = self.lifecycle.get(db, booking_id)
        with self.lifecycle.critical_section(db, booking.resource_kind, booking.resource_id):
            booking = self.lifecycle.reload(db, booking_id)
            if booking.status != models.BookingStatus.APPROVED:
                logger.warning(f"Refused {assignment_kind.value} assignment on booking {booking.id} ({booking.status.value})")
                raise NotApprovedError(booking.id, booking.status)
            assignment = crud.insert_assignment(db, booking, assignment_kind, detail, quantity)

        db.refresh(assignment)
        logger.info(f"Assigned {assignment_kind.value} '{detail}' x{quantity} to booking {booking_id}")
        return assignment

    def list_for_booking(self, db: Session, booking_id: int) -> list[models.ResourceAssignment]:
        self.lifecycle.get(db, booking_id)
        return crud.list_assignments(db, booking_id)

    @contextmanager
    def _booking_section(self, db: Session, booking_id: int):
        """
        The booking's resource critical section, shared with the lifecycle
        so assignment changes never interleave with a cancel cascade.
        """
        booking = self.lifecycle.get(db, booking_id)
        with self.lifecycle.critical_section(db, booking.resource_kind, booking.resource_id):
            self.lifecycle.reload(db, booking_id)
            yield

    def _get_owned(self, db: Session, booking_id: int, assignment_id: int) -> models.ResourceAssignment:
        assignment = crud.get_assignment(db, assignment_id, populate_existing=True)
        if assignment is None or assignment.booking_id != booking_id:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    def unassign(self, db: Session, booking_id: int, assignment_id: int) -> bool:
        """
        Cancels one assignment. Returns False when it was already finished.
        """
        with self._booking_section(db, booking_id):
            assignment = self._get_owned(db, booking_id, assignment_id)
            if assignment.status not in models.ACTIVE_ASSIGNMENT_STATUSES:
                return False
            crud.update_assignment_status(db, assignment, AStatus.CANCELLED)

        logger.info(f"Unassigned {assignment_id} from booking {booking_id}")
        return True

    def clear(self, db: Session, booking_id: int) -> int:
        """
        Cancels every active assignment of the booking, returns how many.
        """
        with self._booking_section(db, booking_id):
            active = crud.list_assignments(db, booking_id, active_only=True)
            for assignment in active:
                crud.update_assignment_status(db, assignment, AStatus.CANCELLED)

        if active:
            logger.info(f"Cleared {len(active)} assignments from booking {booking_id}")
        return len(active)

    def advance(self, db: Session, booking_id: int, assignment_id: int,
                status: models.AssignmentStatus) -> models.ResourceAssignment:
        """
        REQUESTED -> CONFIRMED -> IN_USE -> RETURNED, or CANCELLED from any
        unfinished state.
        """
        with self._booking_section(db, booking_id):
            assignment = self._get_owned(db, booking_id, assignment_id)
            current = assignment.status
            if status not in ASSIGNMENT_TRANSITIONS[current]:
                raise InvalidTransitionError(assignment.id, current, f"move to {status.value}", entity="assignment")
            crud.update_assignment_status(db, assignment, status)

        db.refresh(assignment)
        logger.info(f"Assignment {assignment_id}: {current.value} -> {status.value}")
        return assignment
